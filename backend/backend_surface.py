# backend/surface.py - Rendering surface interfaces and the headless grid

import copy
from typing import List, Dict, Any, Optional, Callable, Iterable, Protocol, runtime_checkable
import logging

from backend_models import (
    ColumnDef, ColumnGroupNode, LayoutNode, ColumnState, GroupOpenState,
    PaginationState, FocusedCell, ScrollPosition, SideBarState,
)

logger = logging.getLogger(__name__)

DEFAULT_GRID_OPTIONS: Dict[str, Any] = {
    "animateRows": True,
    "enableCellChangeFlash": True,
    "suppressRowHoverHighlight": False,
    "rowHeight": 25,
    "headerHeight": 32,
    "rowBuffer": 10,
    "rowSelection": "multiple",
    "suppressRowClickSelection": False,
    "enableRangeSelection": False,
}


@runtime_checkable
class GridSurface(Protocol):
    """Minimum contract a rendering surface must implement."""

    def is_ready(self) -> bool: ...
    def add_ready_listener(self, callback: Callable[["GridSurface"], None]) -> None: ...

    def get_column_defs(self) -> List[LayoutNode]: ...
    def set_column_defs(self, layout: List[LayoutNode]) -> None: ...
    def get_column_state(self) -> List[ColumnState]: ...
    def apply_column_state(self, state: List[ColumnState], apply_order: bool = False) -> None: ...
    def reset_column_state(self) -> None: ...

    def get_filter_model(self) -> Dict[str, Any]: ...
    def set_filter_model(self, model: Optional[Dict[str, Any]]) -> None: ...
    def get_quick_filter(self) -> Optional[str]: ...
    def set_quick_filter(self, text: Optional[str]) -> None: ...

    def get_selected_keys(self) -> List[str]: ...
    def select_keys(self, keys: Iterable[str]) -> None: ...
    def deselect_all(self) -> None: ...

    def get_pagination(self) -> PaginationState: ...
    def set_pagination(self, enabled: bool, page_size: int) -> None: ...
    def go_to_page(self, page: int) -> None: ...

    def set_row_key(self, field: str) -> None: ...
    def set_row_data(self, rows: List[Dict[str, Any]]) -> None: ...
    def apply_transaction(self, add: Optional[List[Dict[str, Any]]] = None,
                          update: Optional[List[Dict[str, Any]]] = None,
                          remove: Optional[List[str]] = None) -> Dict[str, int]: ...
    def get_row_count(self) -> int: ...
    def get_row(self, key: str) -> Optional[Dict[str, Any]]: ...

    def get_option(self, name: str) -> Any: ...
    def set_option(self, name: str, value: Any) -> None: ...


# Optional capabilities

@runtime_checkable
class ColumnGroupStateCapable(Protocol):
    def get_column_group_state(self) -> List[GroupOpenState]: ...
    def set_column_group_state(self, state: List[GroupOpenState]) -> None: ...

@runtime_checkable
class PivotCapable(Protocol):
    def is_pivot_mode(self) -> bool: ...
    def set_pivot_mode(self, enabled: bool) -> None: ...
    def get_row_group_columns(self) -> List[str]: ...
    def set_row_group_columns(self, col_ids: List[str]) -> None: ...
    def get_pivot_columns(self) -> List[str]: ...
    def set_pivot_columns(self, col_ids: List[str]) -> None: ...
    def get_value_columns(self) -> List[str]: ...
    def set_value_columns(self, col_ids: List[str]) -> None: ...

@runtime_checkable
class ExpansionCapable(Protocol):
    def get_expanded_keys(self) -> List[str]: ...
    def set_expanded_keys(self, keys: List[str]) -> None: ...

@runtime_checkable
class PinnedRowsCapable(Protocol):
    def get_pinned_top_rows(self) -> List[Dict[str, Any]]: ...
    def set_pinned_top_rows(self, rows: List[Dict[str, Any]]) -> None: ...
    def get_pinned_bottom_rows(self) -> List[Dict[str, Any]]: ...
    def set_pinned_bottom_rows(self, rows: List[Dict[str, Any]]) -> None: ...

@runtime_checkable
class FocusCapable(Protocol):
    def get_focused_cell(self) -> Optional[FocusedCell]: ...
    def set_focused_cell(self, cell: Optional[FocusedCell]) -> None: ...

@runtime_checkable
class ScrollCapable(Protocol):
    def get_scroll_position(self) -> Optional[ScrollPosition]: ...
    def scroll_to(self, position: ScrollPosition) -> None: ...

@runtime_checkable
class SideBarCapable(Protocol):
    def get_side_bar_state(self) -> Optional[SideBarState]: ...
    def set_side_bar_state(self, state: SideBarState) -> None: ...

@runtime_checkable
class StatusPanelCapable(Protocol):
    def update_status_panel(self, metrics: Dict[str, Any]) -> None: ...


class SurfaceCapabilities:
    """Optional capabilities of one surface, resolved once when it is attached."""

    def __init__(self, surface: Optional[GridSurface] = None):
        self.column_group_state = isinstance(surface, ColumnGroupStateCapable)
        self.pivot = isinstance(surface, PivotCapable)
        self.expansion = isinstance(surface, ExpansionCapable)
        self.pinned_rows = isinstance(surface, PinnedRowsCapable)
        self.focus = isinstance(surface, FocusCapable)
        self.scroll = isinstance(surface, ScrollCapable)
        self.side_bar = isinstance(surface, SideBarCapable)
        self.status_panel = isinstance(surface, StatusPanelCapable)

    def as_dict(self) -> Dict[str, bool]:
        return dict(vars(self))


def iter_leaf_columns(layout: Iterable[LayoutNode]):
    """Yield (column, parent group or None) for every leaf in a layout tree."""
    for node in layout:
        if isinstance(node, ColumnGroupNode):
            for child in node.children:
                yield child, node
        else:
            yield node, None


class BasicGridSurface:
    """In-memory surface implementing only the required ``GridSurface`` contract.

    Setting column defs resets each column's state to the values carried by
    its definition, the way a data grid treats stateful column attributes.
    Column state for unknown column ids is silently ignored.
    """

    def __init__(self, column_defs: Optional[List[LayoutNode]] = None, key_column: str = "id",
                 ready: bool = False):
        self.key_column = key_column
        self._ready = ready
        self._ready_listeners: List[Callable[[GridSurface], None]] = []

        self._layout: List[LayoutNode] = []
        self._columns: Dict[str, ColumnState] = {}
        self._group_open: Dict[str, bool] = {}

        self._filter_model: Dict[str, Any] = {}
        self._quick_filter: Optional[str] = None
        self._rows: Dict[str, Dict[str, Any]] = {}
        self._selected: List[str] = []
        self._pagination = PaginationState()
        self._options: Dict[str, Any] = dict(DEFAULT_GRID_OPTIONS)

        self.row_data_loads = 0
        self.transactions = 0

        if column_defs:
            self.set_column_defs(column_defs)

    # Lifecycle
    def is_ready(self) -> bool:
        return self._ready

    def add_ready_listener(self, callback: Callable[[GridSurface], None]) -> None:
        self._ready_listeners.append(callback)

    def mark_ready(self) -> None:
        self._ready = True
        for callback in list(self._ready_listeners):
            callback(self)

    def mark_unready(self) -> None:
        self._ready = False

    # Columns
    def get_column_defs(self) -> List[LayoutNode]:
        result: List[LayoutNode] = []
        for node in self._layout:
            if isinstance(node, ColumnGroupNode):
                result.append(node.model_copy(update={
                    "children": [self._merged_def(child) for child in node.children]
                }))
            else:
                result.append(self._merged_def(node))
        return result

    def set_column_defs(self, layout: List[LayoutNode]) -> None:
        self._layout = copy.deepcopy(list(layout))
        self._columns = {}
        self._group_open = {}
        for node in self._layout:
            if isinstance(node, ColumnGroupNode):
                self._group_open[node.groupId] = node.openByDefault
        for column, _ in iter_leaf_columns(self._layout):
            self._columns[column.colId] = self._state_from_def(column)

    def get_column_state(self) -> List[ColumnState]:
        return [state.model_copy() for state in self._columns.values()]

    def apply_column_state(self, state: List[ColumnState], apply_order: bool = False) -> None:
        for entry in state:
            if entry.colId in self._columns:
                self._columns[entry.colId] = entry.model_copy()
        if apply_order:
            ordered = [entry.colId for entry in state if entry.colId in self._columns]
            rest = [col_id for col_id in self._columns if col_id not in ordered]
            self._columns = {col_id: self._columns[col_id] for col_id in ordered + rest}

    def reset_column_state(self) -> None:
        self._columns = {
            column.colId: self._state_from_def(column)
            for column, _ in iter_leaf_columns(self._layout)
        }

    def is_column_displayed(self, col_id: str) -> bool:
        state = self._columns.get(col_id)
        if state is None or state.hide:
            return False
        for column, group in iter_leaf_columns(self._layout):
            if column.colId != col_id or group is None:
                continue
            is_open = self._group_open.get(group.groupId, group.openByDefault)
            if column.columnGroupShow == "open":
                return is_open
            if column.columnGroupShow == "closed":
                return not is_open
        return True

    def displayed_columns(self) -> List[str]:
        return [col_id for col_id in self._columns if self.is_column_displayed(col_id)]

    # Filters
    def get_filter_model(self) -> Dict[str, Any]:
        return copy.deepcopy(self._filter_model)

    def set_filter_model(self, model: Optional[Dict[str, Any]]) -> None:
        if model is None:
            self._filter_model = {}
            return
        if not isinstance(model, dict):
            raise TypeError("filter model must be a mapping of column id to filter")
        for col_id, column_filter in model.items():
            if not isinstance(column_filter, dict):
                raise ValueError(f"invalid filter for column '{col_id}'")
        self._filter_model = copy.deepcopy(model)

    def get_quick_filter(self) -> Optional[str]:
        return self._quick_filter

    def set_quick_filter(self, text: Optional[str]) -> None:
        self._quick_filter = text or None

    # Selection
    def get_selected_keys(self) -> List[str]:
        return list(self._selected)

    def select_keys(self, keys: Iterable[str]) -> None:
        for key in keys:
            key = str(key)
            if key in self._rows and key not in self._selected:
                self._selected.append(key)

    def deselect_all(self) -> None:
        self._selected = []

    # Pagination
    def get_pagination(self) -> PaginationState:
        return self._pagination.model_copy()

    def set_pagination(self, enabled: bool, page_size: int) -> None:
        if page_size <= 0:
            raise ValueError("page size must be positive")
        self._pagination = self._pagination.model_copy(update={"enabled": enabled, "pageSize": page_size})

    def go_to_page(self, page: int) -> None:
        self._pagination = self._pagination.model_copy(update={"currentPage": max(0, page)})

    # Rows
    def set_row_key(self, field: str) -> None:
        if field == self.key_column:
            return
        self.key_column = field
        self._rows = {str(row.get(field, key)): row for key, row in self._rows.items()}
        self._selected = []

    def set_row_data(self, rows: List[Dict[str, Any]]) -> None:
        self._rows = {str(row[self.key_column]): dict(row) for row in rows}
        self._selected = [key for key in self._selected if key in self._rows]
        self.row_data_loads += 1

    def apply_transaction(self, add: Optional[List[Dict[str, Any]]] = None,
                          update: Optional[List[Dict[str, Any]]] = None,
                          remove: Optional[List[str]] = None) -> Dict[str, int]:
        result = {"add": 0, "update": 0, "remove": 0}
        for row in add or []:
            self._rows[str(row[self.key_column])] = dict(row)
            result["add"] += 1
        for row in update or []:
            key = str(row[self.key_column])
            if key in self._rows:
                self._rows[key] = dict(row)
                result["update"] += 1
        for key in remove or []:
            if self._rows.pop(str(key), None) is not None:
                result["remove"] += 1
                if str(key) in self._selected:
                    self._selected.remove(str(key))
        self.transactions += 1
        return result

    def get_row_count(self) -> int:
        return len(self._rows)

    def get_row(self, key: str) -> Optional[Dict[str, Any]]:
        row = self._rows.get(str(key))
        return dict(row) if row is not None else None

    # Options
    def get_option(self, name: str) -> Any:
        return self._options.get(name)

    def set_option(self, name: str, value: Any) -> None:
        self._options[name] = value

    # Helpers
    def _state_from_def(self, column: ColumnDef) -> ColumnState:
        return ColumnState(
            colId=column.colId,
            width=column.width,
            hide=column.hide,
            pinned=column.pinned,
            sort=column.sort,
            sortIndex=column.sortIndex,
        )

    def _merged_def(self, column: ColumnDef) -> ColumnDef:
        state = self._columns.get(column.colId)
        if state is None:
            return column.model_copy()
        return column.model_copy(update={
            "width": state.width,
            "hide": state.hide,
            "pinned": state.pinned,
            "sort": state.sort,
            "sortIndex": state.sortIndex,
        })


class HeadlessGridSurface(BasicGridSurface):
    """Headless surface with every optional capability.

    Used to host grid sessions server-side; it keeps the configuration a
    browser grid would hold so profiles can be applied and extracted without
    a rendering client attached.
    """

    def __init__(self, column_defs: Optional[List[LayoutNode]] = None, key_column: str = "id",
                 ready: bool = False):
        self._pivot_mode = False
        self._row_group_columns: List[str] = []
        self._pivot_columns: List[str] = []
        self._value_columns: List[str] = []
        self._expanded: List[str] = []
        self._pinned_top: List[Dict[str, Any]] = []
        self._pinned_bottom: List[Dict[str, Any]] = []
        self._focused: Optional[FocusedCell] = None
        self._scroll = ScrollPosition()
        self._side_bar = SideBarState()
        self.status_panel: Dict[str, Any] = {}
        self.status_panel_updates = 0
        super().__init__(column_defs, key_column=key_column, ready=ready)

    # Column group open state
    def get_column_group_state(self) -> List[GroupOpenState]:
        return [GroupOpenState(groupId=group_id, open=is_open) for group_id, is_open in self._group_open.items()]

    def set_column_group_state(self, state: List[GroupOpenState]) -> None:
        for entry in state:
            if entry.groupId in self._group_open:
                self._group_open[entry.groupId] = entry.open

    # Pivot and row grouping
    def is_pivot_mode(self) -> bool:
        return self._pivot_mode

    def set_pivot_mode(self, enabled: bool) -> None:
        self._pivot_mode = bool(enabled)

    def get_row_group_columns(self) -> List[str]:
        return list(self._row_group_columns)

    def set_row_group_columns(self, col_ids: List[str]) -> None:
        self._row_group_columns = [c for c in col_ids if c in self._columns]

    def get_pivot_columns(self) -> List[str]:
        return list(self._pivot_columns)

    def set_pivot_columns(self, col_ids: List[str]) -> None:
        self._pivot_columns = [c for c in col_ids if c in self._columns]

    def get_value_columns(self) -> List[str]:
        return list(self._value_columns)

    def set_value_columns(self, col_ids: List[str]) -> None:
        self._value_columns = [c for c in col_ids if c in self._columns]

    # Expansion
    def get_expanded_keys(self) -> List[str]:
        return list(self._expanded)

    def set_expanded_keys(self, keys: List[str]) -> None:
        self._expanded = list(dict.fromkeys(keys))

    # Pinned rows
    def get_pinned_top_rows(self) -> List[Dict[str, Any]]:
        return copy.deepcopy(self._pinned_top)

    def set_pinned_top_rows(self, rows: List[Dict[str, Any]]) -> None:
        self._pinned_top = copy.deepcopy(rows)

    def get_pinned_bottom_rows(self) -> List[Dict[str, Any]]:
        return copy.deepcopy(self._pinned_bottom)

    def set_pinned_bottom_rows(self, rows: List[Dict[str, Any]]) -> None:
        self._pinned_bottom = copy.deepcopy(rows)

    # Focus, scroll, side bar
    def get_focused_cell(self) -> Optional[FocusedCell]:
        return self._focused.model_copy() if self._focused else None

    def set_focused_cell(self, cell: Optional[FocusedCell]) -> None:
        if cell is not None and cell.column not in self._columns:
            raise ValueError(f"cannot focus unknown column '{cell.column}'")
        self._focused = cell.model_copy() if cell else None

    def get_scroll_position(self) -> Optional[ScrollPosition]:
        return self._scroll.model_copy()

    def scroll_to(self, position: ScrollPosition) -> None:
        self._scroll = ScrollPosition(top=max(0, position.top), left=max(0, position.left))

    def get_side_bar_state(self) -> Optional[SideBarState]:
        return self._side_bar.model_copy()

    def set_side_bar_state(self, state: SideBarState) -> None:
        self._side_bar = state.model_copy()

    # Status panel
    def update_status_panel(self, metrics: Dict[str, Any]) -> None:
        self.status_panel = dict(metrics)
        self.status_panel_updates += 1
