# backend/stream_reconciler.py - Snapshot/update reconciliation for streamed rows

import asyncio
import time
from typing import List, Dict, Any, Optional, Callable
import logging

from backend_models import StreamEvent, StreamEventKind, StreamStatus, SnapshotMode, new_id
from backend_surface import GridSurface, SurfaceCapabilities
from backend_channel import StreamingChannel, is_snapshot_end_token
from backend_config import settings

logger = logging.getLogger(__name__)

StatusListener = Callable[[StreamStatus], None]

class StreamReconciler:
    """Turns a stream of keyed record batches into a stable live row set.

    Until the snapshot is complete, batches accumulate in a private buffer and
    the surface only sees throttled count updates. Completion hands the whole
    buffer to the surface in a single load. After that every record is an
    upsert applied through the surface's transaction entry point.

    Deliveries can be published as ``StreamEvent`` objects onto ``queue`` and
    processed with ``drain()`` or ``run()``. Every ``reset()`` starts a new
    session; events stamped with an older session id are ignored.
    """

    def __init__(self, key_column: Optional[str] = None, surface: Optional[GridSurface] = None,
                 capabilities: Optional[SurfaceCapabilities] = None,
                 clock: Callable[[], float] = time.monotonic,
                 throttle_ms: Optional[int] = None,
                 snapshot_end_token: Optional[str] = None):
        self.key_column = key_column or settings.DEFAULT_KEY_COLUMN
        self.snapshot_end_token = snapshot_end_token
        self.clock = clock
        self.throttle_ms = settings.STREAM_COUNT_THROTTLE_MS if throttle_ms is None else throttle_ms
        self.queue: asyncio.Queue = asyncio.Queue()

        self._surface: Optional[GridSurface] = None
        self._capabilities = SurfaceCapabilities()
        self._listeners: List[StatusListener] = []
        self._status = StreamStatus()
        self._buffer: Dict[str, Dict[str, Any]] = {}
        self._rows: Dict[str, Dict[str, Any]] = {}
        self._last_notify: Optional[float] = None

        if surface is not None:
            self.attach_surface(surface, capabilities)

    # Wiring
    def configure(self, key_column: Optional[str] = None, snapshot_end_token: Optional[str] = None,
                  source_id: Optional[str] = None):
        if key_column:
            self.key_column = key_column
        self.snapshot_end_token = snapshot_end_token
        self._status.sourceId = source_id
        if self._surface is not None:
            self._surface.set_row_key(self.key_column)

    def attach_surface(self, surface: GridSurface, capabilities: Optional[SurfaceCapabilities] = None):
        self._surface = surface
        self._capabilities = capabilities or SurfaceCapabilities(surface)
        if self._status.isComplete and self._rows:
            surface.set_row_key(self.key_column)
            surface.set_row_data(list(self._rows.values()))
            logger.info(f"Pushed {len(self._rows)} live rows to newly attached surface")

    def detach_surface(self):
        self._surface = None
        self._capabilities = SurfaceCapabilities()

    def add_status_listener(self, listener: StatusListener):
        self._listeners.append(listener)

    @property
    def status(self) -> StreamStatus:
        return self._status.model_copy(update={"rowCount": self._row_count()})

    @property
    def session_id(self) -> int:
        return self._status.sessionId

    def get_rows(self) -> List[Dict[str, Any]]:
        return [dict(row) for row in self._rows.values()]

    # Stream operations
    def on_batch(self, records: List[Dict[str, Any]]):
        if not records:
            return

        if self._status.isComplete:
            self._upsert(records)
            return

        if self._status.mode in (SnapshotMode.IDLE, SnapshotMode.REQUESTING):
            self._status.mode = SnapshotMode.RECEIVING

        end_of_snapshot = False
        received = 0
        for record in records:
            if is_snapshot_end_token(record, self.key_column, self.snapshot_end_token):
                end_of_snapshot = True
                continue
            key = self._ensure_key(record)
            self._buffer[key] = record
            received += 1

        self._status.messageCount += received
        self._notify()

        if end_of_snapshot:
            self.mark_snapshot_complete()

    def mark_snapshot_complete(self):
        if self._status.isComplete:
            return

        self._rows = self._buffer
        self._buffer = {}
        self._status.mode = SnapshotMode.COMPLETE
        self._status.isComplete = True

        if self._surface is not None:
            self._surface.set_row_data(list(self._rows.values()))
            logger.info(f"Snapshot complete: loaded {len(self._rows)} rows")
        else:
            logger.info(f"Snapshot complete: {len(self._rows)} rows held until a surface attaches")

        self._notify(force=True)

    async def request_cached_snapshot(self, channel: StreamingChannel, source_id: str) -> List[Dict[str, Any]]:
        """Ask the channel for its cached snapshot instead of waiting for a replay"""
        if self._status.isComplete:
            logger.debug(f"Snapshot already complete for {source_id}, ignoring cached snapshot request")
            return []

        self._status.mode = SnapshotMode.REQUESTING
        try:
            records = await channel.get_snapshot(source_id)
        except Exception as e:
            logger.error(f"Cached snapshot request for {source_id} failed: {e}")
            self._status.mode = SnapshotMode.IDLE
            return []

        if not records:
            logger.info(f"No cached snapshot available for {source_id}")
            return []

        self._buffer = {}
        for record in records:
            self._buffer[self._ensure_key(record)] = record
        self._status.messageCount = len(records)
        self.mark_snapshot_complete()
        return records

    def reset(self):
        had_rows = bool(self._rows)
        self._buffer = {}
        self._rows = {}
        self._last_notify = None
        self._status = StreamStatus(sessionId=self._status.sessionId + 1, sourceId=self._status.sourceId)
        if had_rows and self._surface is not None:
            self._surface.set_row_data([])
        logger.debug(f"Stream session reset, now session {self._status.sessionId}")

    # Event channel
    def publish(self, event: StreamEvent):
        if event.sessionId is None:
            event = event.model_copy(update={"sessionId": self._status.sessionId})
        self.queue.put_nowait(event)

    async def drain(self) -> int:
        """Process every event queued so far, in delivery order"""
        processed = 0
        while not self.queue.empty():
            event = self.queue.get_nowait()
            try:
                self.handle_event(event)
                processed += 1
            except Exception as e:
                logger.error(f"Failed to process {event.kind.value} event: {e}")
            finally:
                self.queue.task_done()
        return processed

    async def run(self):
        while True:
            event = await self.queue.get()
            try:
                self.handle_event(event)
            except Exception as e:
                logger.error(f"Failed to process {event.kind.value} event: {e}")
            finally:
                self.queue.task_done()

    def handle_event(self, event: StreamEvent):
        if event.sessionId is not None and event.sessionId != self._status.sessionId:
            logger.debug(f"Dropping {event.kind.value} event from stale session {event.sessionId}")
            return

        if event.kind in (StreamEventKind.SNAPSHOT, StreamEventKind.UPDATE):
            self.on_batch(event.records)
        elif event.kind == StreamEventKind.SNAPSHOT_COMPLETE:
            self.mark_snapshot_complete()
        else:
            logger.debug(f"Channel status for {event.sourceId}: {event.stats}")

    # Helpers
    def _ensure_key(self, record: Dict[str, Any]) -> str:
        key = record.get(self.key_column)
        if key is None or key == "":
            key = f"missing-key-{new_id()}"
            record[self.key_column] = key
            logger.warning(f"Record without '{self.key_column}' received, assigned key {key}")
        return str(key)

    def _upsert(self, records: List[Dict[str, Any]]):
        if self._surface is None:
            logger.warning(f"No surface attached, dropping update of {len(records)} records")
            return

        add: Dict[str, Dict[str, Any]] = {}
        update: Dict[str, Dict[str, Any]] = {}
        for record in records:
            key = self._ensure_key(record)
            # a key added earlier in this batch stays an add
            if key in self._rows and key not in add:
                update[key] = record
            else:
                add[key] = record
            self._rows[key] = record

        self._surface.apply_transaction(add=list(add.values()), update=list(update.values()))
        self._notify()

    def _row_count(self) -> int:
        return len(self._rows) if self._status.isComplete else len(self._buffer)

    def _notify(self, force: bool = False):
        now = self.clock()
        if not force and self._last_notify is not None:
            if (now - self._last_notify) * 1000 < self.throttle_ms:
                return
        self._last_notify = now

        status = self.status
        for listener in list(self._listeners):
            try:
                listener(status)
            except Exception as e:
                logger.error(f"Status listener failed: {e}")

        if self._surface is not None and self._capabilities.status_panel:
            try:
                self._surface.update_status_panel({
                    "rowCount": status.rowCount,
                    "messageCount": status.messageCount,
                    "mode": status.mode.value,
                    "isComplete": status.isComplete,
                })
            except Exception as e:
                logger.warning(f"Status panel update failed: {e}")
