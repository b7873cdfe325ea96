# backend/grid_state.py - Extract and apply the full configuration of a grid surface

from typing import List, Optional
import logging

from backend_models import (
    GridState, ExtractOptions, ApplyOptions, ColumnState, SortModelItem, PaginationState,
)
from backend_surface import GridSurface, SurfaceCapabilities
from backend_column_groups import ColumnGroupService
from backend_pending_queue import PendingApplicationQueue

logger = logging.getLogger(__name__)

DISPLAY_OPTION_KEYS = (
    "animateRows",
    "enableCellChangeFlash",
    "suppressRowHoverHighlight",
    "rowHeight",
    "headerHeight",
    "rowBuffer",
    "rowSelection",
    "suppressRowClickSelection",
    "enableRangeSelection",
)

class GridStateManager:
    """Reads and writes every state facet of one attached surface.

    ``apply`` runs the facets in a fixed order. When the state references
    column groups, its column state is staged in the pending queue and the
    column group service rebuilds the grouped layout before applying it.
    A facet that raises is logged and skipped; the rest still run.
    """

    def __init__(self, column_groups: Optional[ColumnGroupService] = None,
                 pending: Optional[PendingApplicationQueue] = None,
                 surface: Optional[GridSurface] = None):
        self.column_groups = column_groups
        self.pending = pending or PendingApplicationQueue()
        self.surface: Optional[GridSurface] = None
        self.capabilities = SurfaceCapabilities()
        self.default_state: Optional[GridState] = None
        if surface is not None:
            self.attach_surface(surface)

    def attach_surface(self, surface: GridSurface):
        self.surface = surface
        self.capabilities = SurfaceCapabilities(surface)
        logger.debug(f"Surface attached with capabilities {self.capabilities.as_dict()}")

    def detach_surface(self):
        self.surface = None
        self.capabilities = SurfaceCapabilities()

    def set_default_state(self, state: Optional[GridState]):
        self.default_state = state

    # Extraction
    def extract(self, options: Optional[ExtractOptions] = None) -> Optional[GridState]:
        if self.surface is None:
            logger.warning("Cannot extract grid state: no surface attached")
            return None

        options = options or ExtractOptions()
        surface = self.surface
        caps = self.capabilities
        try:
            column_state = surface.get_column_state()
            state = GridState(
                columnState=column_state,
                columnGroupState=self._extract_group_state(),
                activeColumnGroupIds=list(self.column_groups.active_group_ids) if self.column_groups else [],
                filterModel=surface.get_filter_model() or {},
                sortModel=self._sort_model(column_state),
                quickFilter=surface.get_quick_filter(),
                rowGroupColumns=surface.get_row_group_columns() if caps.pivot else [],
                pivotMode=surface.is_pivot_mode() if caps.pivot else False,
                pivotColumns=surface.get_pivot_columns() if caps.pivot else [],
                valueColumns=surface.get_value_columns() if caps.pivot else [],
                pagination=surface.get_pagination(),
                selectedRowIds=self._selected_ids(options.rowIdField),
                expandedGroups=surface.get_expanded_keys() if caps.expansion else [],
                pinnedTopRowData=surface.get_pinned_top_rows() if caps.pinned_rows else [],
                pinnedBottomRowData=surface.get_pinned_bottom_rows() if caps.pinned_rows else [],
                gridOptions=self._display_options(),
                focusedCell=surface.get_focused_cell() if caps.focus else None,
                scrollPosition=surface.get_scroll_position() if caps.scroll else None,
                sideBarState=surface.get_side_bar_state() if caps.side_bar else None,
            )
            if options.includeColumnDefs:
                state.columnDefs = surface.get_column_defs()
            return state
        except Exception as e:
            logger.error(f"Error extracting grid state: {e}")
            return None

    def _extract_group_state(self):
        if self.column_groups is not None:
            return self.column_groups.extract_group_open_state(self.surface, self.capabilities)
        if self.capabilities.column_group_state:
            return self.surface.get_column_group_state()
        return []

    def _sort_model(self, column_state: List[ColumnState]) -> List[SortModelItem]:
        sorted_columns = [c for c in column_state if c.sort]
        sorted_columns.sort(key=lambda c: c.sortIndex if c.sortIndex is not None else len(column_state))
        return [SortModelItem(colId=c.colId, sort=c.sort) for c in sorted_columns]

    def _selected_ids(self, row_id_field: Optional[str]) -> List[str]:
        keys = self.surface.get_selected_keys()
        if not row_id_field:
            return keys
        ids = []
        for key in keys:
            row = self.surface.get_row(key)
            if row is not None and row.get(row_id_field) is not None:
                ids.append(str(row[row_id_field]))
        return ids

    def _display_options(self):
        options = {}
        for key in DISPLAY_OPTION_KEYS:
            value = self.surface.get_option(key)
            if value is not None:
                options[key] = value
        return options

    # Application
    def apply(self, state: GridState, options: Optional[ApplyOptions] = None) -> bool:
        if self.surface is None:
            logger.warning("Cannot apply grid state: no surface attached")
            return False

        options = options or ApplyOptions()
        facets: List[tuple] = [
            ("column state", options.applyColumnState, self._apply_columns),
            ("filters", options.applyFilters, self._apply_filters),
            ("grouping", options.applyGrouping, self._apply_grouping),
            ("pagination", options.applyPagination, self._apply_pagination),
            ("selection", options.applySelection, self._apply_selection),
            ("expansion", options.applyExpansion, self._apply_expansion),
            ("pinned rows", options.applyPinning, self._apply_pinned_rows),
            ("grid options", options.applyGridOptions, self._apply_grid_options),
            ("focused cell", options.applyFocus, self._apply_focus),
            ("scroll position", options.applyScrollPosition, self._apply_scroll),
            ("side bar", options.applySideBar, self._apply_side_bar),
        ]

        failed = []
        for name, enabled, apply_facet in facets:
            if not enabled:
                continue
            try:
                apply_facet(state)
            except Exception as e:
                logger.error(f"Failed to apply {name}: {e}")
                failed.append(name)

        if failed:
            logger.warning(f"Grid state applied with failures in: {', '.join(failed)}")
            return False
        logger.debug("Grid state applied")
        return True

    def _apply_columns(self, state: GridState):
        groups = self.column_groups
        if groups is not None and groups.needs_layout(state.activeColumnGroupIds):
            self.pending.stage_column_state(state.columnState, state.columnGroupState)
            try:
                groups.apply_groups(self.surface, state.activeColumnGroupIds, self.pending, self.capabilities)
            finally:
                if self.pending.has_staged_column_state:
                    self.pending.take_column_state()
            return

        if state.activeColumnGroupIds:
            logger.warning("State references column groups but no column group service is configured")

        if state.columnState:
            self.surface.apply_column_state(state.columnState, apply_order=True)
        elif state.sortModel:
            self._apply_sort_model(state)

        if state.columnGroupState:
            if groups is not None:
                groups.apply_group_open_state(self.surface, state.columnGroupState, self.capabilities)
            elif self.capabilities.column_group_state:
                self.surface.set_column_group_state(state.columnGroupState)

    def _apply_sort_model(self, state: GridState):
        order = {item.colId: index for index, item in enumerate(state.sortModel)}
        directions = {item.colId: item.sort for item in state.sortModel}
        self.surface.apply_column_state([
            column.model_copy(update={
                "sort": directions.get(column.colId),
                "sortIndex": order.get(column.colId),
            })
            for column in self.surface.get_column_state()
        ])

    def _apply_filters(self, state: GridState):
        self.surface.set_filter_model(state.filterModel)
        self.surface.set_quick_filter(state.quickFilter)

    def _apply_grouping(self, state: GridState):
        if not self.capabilities.pivot:
            logger.debug("Surface does not support row grouping or pivoting, skipping")
            return
        self.surface.set_row_group_columns(state.rowGroupColumns)
        self.surface.set_pivot_mode(state.pivotMode)
        self.surface.set_pivot_columns(state.pivotColumns)
        self.surface.set_value_columns(state.valueColumns)

    def _apply_pagination(self, state: GridState):
        pagination = state.pagination
        self.surface.set_pagination(pagination.enabled, pagination.pageSize)
        self.surface.go_to_page(pagination.currentPage)

    def _apply_selection(self, state: GridState):
        self.surface.deselect_all()
        self.surface.select_keys(state.selectedRowIds)

    def _apply_expansion(self, state: GridState):
        if self.capabilities.expansion:
            self.surface.set_expanded_keys(state.expandedGroups)

    def _apply_pinned_rows(self, state: GridState):
        if not self.capabilities.pinned_rows:
            return
        self.surface.set_pinned_top_rows(state.pinnedTopRowData)
        self.surface.set_pinned_bottom_rows(state.pinnedBottomRowData)

    def _apply_grid_options(self, state: GridState):
        for key, value in state.gridOptions.items():
            if value is not None:
                self.surface.set_option(key, value)

    def _apply_focus(self, state: GridState):
        if self.capabilities.focus:
            self.surface.set_focused_cell(state.focusedCell)

    def _apply_scroll(self, state: GridState):
        if self.capabilities.scroll and state.scrollPosition is not None:
            self.surface.scroll_to(state.scrollPosition)

    def _apply_side_bar(self, state: GridState):
        if self.capabilities.side_bar and state.sideBarState is not None:
            self.surface.set_side_bar_state(state.sideBarState)

    # Reset
    def reset_to_default(self) -> bool:
        if self.surface is None:
            return False
        try:
            self.surface.reset_column_state()
            self.surface.set_filter_model(None)
            self.surface.set_quick_filter(None)
            self.surface.deselect_all()
            default_pagination = PaginationState()
            self.surface.set_pagination(default_pagination.enabled, default_pagination.pageSize)
            self.surface.go_to_page(default_pagination.currentPage)
        except Exception as e:
            logger.error(f"Error resetting grid state: {e}")
            return False

        if self.default_state is not None:
            return self.apply(self.default_state)
        return True
