# backend/models.py - Pydantic models for grid state, profiles and the stream

import uuid
from pydantic import BaseModel, Field, field_validator, model_validator
from typing import List, Optional, Dict, Any, Union, Literal
from datetime import datetime, timezone
from enum import Enum

PinnedSide = Optional[Literal["left", "right"]]
SortDirection = Optional[Literal["asc", "desc"]]
GroupShow = Optional[Literal["open", "closed"]]


def new_id() -> str:
    return uuid.uuid4().hex


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


# Stream

class SnapshotMode(str, Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    RECEIVING = "receiving"
    COMPLETE = "complete"

class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"

class StreamEventKind(str, Enum):
    SNAPSHOT = "snapshot"
    UPDATE = "update"
    SNAPSHOT_COMPLETE = "snapshot_complete"
    STATUS = "status"

class StreamEvent(BaseModel):
    kind: StreamEventKind
    sourceId: Optional[str] = None
    records: List[Dict[str, Any]] = []
    stats: Optional[Dict[str, Any]] = None
    sessionId: Optional[int] = None

class StreamStatus(BaseModel):
    mode: SnapshotMode = SnapshotMode.IDLE
    messageCount: int = 0
    rowCount: int = 0
    isComplete: bool = False
    sessionId: int = 0
    sourceId: Optional[str] = None

class ConnectionState(BaseModel):
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    providerId: Optional[str] = None
    clientId: str = ""
    error: Optional[str] = None

    @property
    def isConnected(self) -> bool:
        return self.status == ConnectionStatus.CONNECTED

class ChannelStatus(BaseModel):
    sourceId: str
    isConnected: bool = False
    mode: str = "idle"
    isSnapshotComplete: bool = False
    snapshotRowsReceived: int = 0
    updateRowsReceived: int = 0
    connectionCount: int = 0
    disconnectionCount: int = 0


# Columns and layout

class ColumnDef(BaseModel):
    colId: str
    field: Optional[str] = None
    headerName: Optional[str] = None
    width: Optional[int] = None
    hide: bool = False
    pinned: PinnedSide = None
    sort: SortDirection = None
    sortIndex: Optional[int] = None
    cellDataType: Optional[str] = None
    columnGroupShow: GroupShow = None

    @model_validator(mode="before")
    @classmethod
    def _default_col_id(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("colId") and data.get("field"):
            data = {**data, "colId": data["field"]}
        return data

class ColumnGroupNode(BaseModel):
    groupId: str
    headerName: str
    openByDefault: bool = True
    marryChildren: bool = False
    children: List[ColumnDef] = []

LayoutNode = Union[ColumnGroupNode, ColumnDef]

class ColumnState(BaseModel):
    colId: str
    width: Optional[int] = None
    hide: bool = False
    pinned: PinnedSide = None
    sort: SortDirection = None
    sortIndex: Optional[int] = None

class GroupOpenState(BaseModel):
    groupId: str
    open: bool = True


# Grid state

class SortModelItem(BaseModel):
    colId: str
    sort: Literal["asc", "desc"]

class PaginationState(BaseModel):
    enabled: bool = False
    pageSize: int = 100
    currentPage: int = 0

class FocusedCell(BaseModel):
    rowIndex: int
    column: str
    rowPinned: PinnedSide = None

class ScrollPosition(BaseModel):
    top: float = 0
    left: float = 0

class SideBarState(BaseModel):
    visible: bool = False
    position: PinnedSide = None
    openedToolPanel: Optional[str] = None

class GridState(BaseModel):
    columnState: List[ColumnState] = []
    columnGroupState: List[GroupOpenState] = []
    activeColumnGroupIds: List[str] = []
    columnDefs: Optional[List[LayoutNode]] = None

    filterModel: Dict[str, Any] = {}
    sortModel: List[SortModelItem] = []
    quickFilter: Optional[str] = None

    rowGroupColumns: List[str] = []
    pivotMode: bool = False
    pivotColumns: List[str] = []
    valueColumns: List[str] = []

    pagination: PaginationState = Field(default_factory=PaginationState)
    selectedRowIds: List[str] = []
    expandedGroups: List[str] = []
    pinnedTopRowData: List[Dict[str, Any]] = []
    pinnedBottomRowData: List[Dict[str, Any]] = []

    gridOptions: Dict[str, Union[bool, int, float, str, None]] = {}
    focusedCell: Optional[FocusedCell] = None
    scrollPosition: Optional[ScrollPosition] = None
    sideBarState: Optional[SideBarState] = None

    version: str = "1.0.0"

    @field_validator("columnState")
    @classmethod
    def _unique_column_ids(cls, value: List[ColumnState]) -> List[ColumnState]:
        seen = set()
        for entry in value:
            if entry.colId in seen:
                raise ValueError(f"duplicate column state for '{entry.colId}'")
            seen.add(entry.colId)
        return value

class ExtractOptions(BaseModel):
    includeColumnDefs: bool = False
    rowIdField: Optional[str] = None

class ApplyOptions(BaseModel):
    applyColumnState: bool = True
    applyFilters: bool = True
    applyGrouping: bool = True
    applyPagination: bool = True
    applySelection: bool = True
    applyExpansion: bool = True
    applyPinning: bool = True
    applyGridOptions: bool = True
    applyFocus: bool = True
    applyScrollPosition: bool = True
    applySideBar: bool = True


# Column groups

class ShowRule(str, Enum):
    ALWAYS = "always"
    ONLY_WHEN_OPEN = "onlyWhenOpen"
    ONLY_WHEN_CLOSED = "onlyWhenClosed"

class ColumnGroupChild(BaseModel):
    columnId: str
    showRule: ShowRule = ShowRule.ALWAYS

class ColumnGroupDefinition(BaseModel):
    id: str
    label: str
    openByDefault: bool = True
    children: List[ColumnGroupChild] = []
    description: Optional[str] = None
    createdAt: Optional[str] = None
    updatedAt: Optional[str] = None

class ColumnGroupConfiguration(BaseModel):
    version: str = "2.0.0"
    groups: List[ColumnGroupDefinition] = []
    timestamp: str = Field(default_factory=utc_now)


# Profiles

class CalculatedColumn(BaseModel):
    field: str
    headerName: Optional[str] = None
    expression: str = ""
    cellDataType: str = "text"
    pinned: PinnedSide = None
    width: Optional[int] = None

class Profile(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    instanceId: Optional[str] = None
    isDefault: bool = False
    isLocked: bool = False
    dataSourceId: Optional[str] = None
    autoConnect: bool = False
    uiPreferences: Dict[str, Any] = {}
    gridState: Optional[GridState] = None
    activeColumnGroupIds: List[str] = []
    calculatedColumns: List[CalculatedColumn] = []
    conditionalFormattingRules: List[Dict[str, Any]] = []
    # Legacy inline column groups, migrated to instance storage on load
    columnGroups: Optional[List[Dict[str, Any]]] = None
    createdAt: Optional[str] = None
    updatedAt: Optional[str] = None
    isDeleted: bool = False

class ProfileFilter(BaseModel):
    instanceId: Optional[str] = None
    dataSourceId: Optional[str] = None
    name: Optional[str] = None
    isDefault: Optional[bool] = None
    includeDeleted: bool = False

class ProfileExport(BaseModel):
    componentType: str
    exportedAt: str = Field(default_factory=utc_now)
    profile: Profile

class ProfileLoadResult(str, Enum):
    APPLIED = "applied"
    QUEUED = "queued"
    SUPERSEDED = "superseded"
    NOT_FOUND = "not_found"
    FAILED = "failed"

class PendingApplication(BaseModel):
    profile: Optional[Profile] = None
    gridState: Optional[GridState] = None
    columnState: Optional[List[ColumnState]] = None
    columnGroupState: Optional[List[GroupOpenState]] = None


# Providers

class ProviderConfig(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str = ""
    websocketUrl: Optional[str] = None
    listenerTopic: Optional[str] = None
    keyColumn: str = "id"
    snapshotEndToken: Optional[str] = None
    snapshotTimeoutMs: int = 60000
    columnDefinitions: List[ColumnDef] = []


# API payloads

class SessionCreateRequest(BaseModel):
    ready: bool = True
    columns: Optional[List[ColumnDef]] = None
    keyColumn: Optional[str] = None

class ConnectRequest(BaseModel):
    providerId: str

class RowBatchRequest(BaseModel):
    records: List[Dict[str, Any]]

class SaveProfileRequest(BaseModel):
    name: Optional[str] = None
    saveAsNew: bool = False

class SaveAsRequest(BaseModel):
    name: str

class ApplyStateRequest(BaseModel):
    state: GridState
    options: Optional[ApplyOptions] = None

class ColumnGroupsUpdate(BaseModel):
    groups: List[ColumnGroupDefinition]
