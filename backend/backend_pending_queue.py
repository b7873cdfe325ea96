# backend/pending_queue.py - Deferred profile application for surfaces that are not ready

from enum import Enum
from typing import List, Optional, Union, Callable, Awaitable
import logging

from backend_models import Profile, GridState, PendingApplication, ColumnState, GroupOpenState
from backend_surface import GridSurface

logger = logging.getLogger(__name__)

FlushHandler = Callable[[PendingApplication, GridSurface], Awaitable[None]]

class FlushAborted(Exception):
    """Raised by a flush handler when the surface stops being ready mid-apply"""
    pass

class PendingState(str, Enum):
    EMPTY = "empty"
    QUEUED = "queued"
    FLUSHING = "flushing"

class PendingApplicationQueue:
    """Holds at most one profile or state waiting for the surface.

    A newer enqueue replaces whatever is waiting. The column state staged by
    ``stage_column_state`` is a separate slot: it carries column state from
    the grid state applier to the column group service while the grouped
    layout is rebuilt.
    """

    def __init__(self, handler: Optional[FlushHandler] = None):
        self.handler = handler
        self.state = PendingState.EMPTY
        self._entry: Optional[PendingApplication] = None
        self._staged: Optional[PendingApplication] = None

    def enqueue(self, item: Union[Profile, GridState, PendingApplication]):
        if isinstance(item, Profile):
            entry = PendingApplication(profile=item, gridState=item.gridState)
        elif isinstance(item, GridState):
            entry = PendingApplication(gridState=item)
        else:
            entry = item

        if self._entry is not None:
            logger.info("Replacing pending application with a newer one")
        self._entry = entry
        if self.state != PendingState.FLUSHING:
            self.state = PendingState.QUEUED

    def peek(self) -> Optional[PendingApplication]:
        return self._entry

    def is_empty(self) -> bool:
        return self._entry is None

    async def flush_on_ready(self, surface: GridSurface, handler: Optional[FlushHandler] = None) -> bool:
        """Apply the waiting entry once the surface is ready.

        Returns True when the entry was applied. A handler that raises
        ``FlushAborted`` leaves the entry queued for the next ready signal.
        """
        handler = handler or self.handler
        if self._entry is None or handler is None:
            return False
        if not surface.is_ready():
            logger.debug("Surface not ready, keeping pending application queued")
            return False

        entry = self._entry
        self.state = PendingState.FLUSHING
        try:
            await handler(entry, surface)
        except FlushAborted as e:
            logger.warning(f"Pending application aborted, kept queued: {e}")
            self.state = PendingState.QUEUED
            return False
        except Exception as e:
            logger.error(f"Pending application failed: {e}")
            self.state = PendingState.QUEUED
            return False

        if self._entry is entry:
            self._entry = None
            self.state = PendingState.EMPTY
        else:
            self.state = PendingState.QUEUED
        return True

    def discard(self):
        self._entry = None
        self._staged = None
        self.state = PendingState.EMPTY

    # Deferred column state
    def stage_column_state(self, column_state: List[ColumnState],
                           column_group_state: Optional[List[GroupOpenState]] = None):
        self._staged = PendingApplication(columnState=list(column_state),
                                          columnGroupState=list(column_group_state or []))

    def take_column_state(self) -> Optional[PendingApplication]:
        staged, self._staged = self._staged, None
        return staged

    @property
    def has_staged_column_state(self) -> bool:
        return self._staged is not None
