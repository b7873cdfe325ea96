# backend/column_groups.py - Instance-level column groups and grouped layouts

from typing import List, Dict, Any, Optional, Iterable, Union
import logging

from backend_database import Database
from backend_models import (
    ColumnDef, ColumnGroupNode, LayoutNode, ColumnState, GroupOpenState,
    ColumnGroupDefinition, ColumnGroupChild, ColumnGroupConfiguration,
    CalculatedColumn, ShowRule, new_id, utc_now,
)
from backend_surface import GridSurface, SurfaceCapabilities, iter_leaf_columns
from backend_pending_queue import PendingApplicationQueue

logger = logging.getLogger(__name__)

COLUMN_GROUPS_COMPONENT_TYPE = "grid"
COLUMN_GROUPS_SUB_TYPE = "column_groups"

SHOW_RULE_MARKERS = {
    ShowRule.ALWAYS: None,
    ShowRule.ONLY_WHEN_OPEN: "open",
    ShowRule.ONLY_WHEN_CLOSED: "closed",
}
MARKER_SHOW_RULES = {"open": ShowRule.ONLY_WHEN_OPEN, "closed": ShowRule.ONLY_WHEN_CLOSED}

class ColumnGroupStorageError(Exception):
    pass


def column_from_calculated(column: CalculatedColumn) -> ColumnDef:
    return ColumnDef(
        colId=column.field,
        field=column.field,
        headerName=column.headerName or column.field,
        cellDataType=column.cellDataType,
        pinned=column.pinned,
        width=column.width,
    )


def flatten_layout(layout: Iterable[LayoutNode]) -> List[ColumnDef]:
    """Leaf columns of a layout with group markers removed"""
    return [column.model_copy(update={"columnGroupShow": None}) for column, _ in iter_leaf_columns(layout)]


def build_layout(base_columns: List[ColumnDef], active_group_ids: List[str],
                 definitions: Union[Dict[str, ColumnGroupDefinition], Iterable[ColumnGroupDefinition]],
                 calculated_columns: Optional[List[CalculatedColumn]] = None) -> List[LayoutNode]:
    """Wrap base columns into the active groups.

    Each group takes the position of its earliest member in the base column
    order and keeps its children in definition order. A column belongs to the
    first active group that claims it. Ungrouped columns keep their order.
    Unknown group ids, unknown column ids and groups left without children
    are skipped.
    """
    if not isinstance(definitions, dict):
        definitions = {definition.id: definition for definition in definitions}

    columns = [column.model_copy(update={"columnGroupShow": None}) for column in base_columns]
    known = {column.colId for column in columns}
    for calculated in calculated_columns or []:
        if calculated.field not in known:
            columns.append(column_from_calculated(calculated))
            known.add(calculated.field)

    by_id = {column.colId: column for column in columns}
    position = {column.colId: index for index, column in enumerate(columns)}
    claimed: Dict[str, str] = {}
    anchored: Dict[int, ColumnGroupNode] = {}
    seen = set()

    for group_id in active_group_ids:
        if group_id in seen:
            continue
        seen.add(group_id)
        definition = definitions.get(group_id)
        if definition is None:
            logger.debug(f"Skipping unknown column group {group_id}")
            continue

        children = []
        for child in definition.children:
            column = by_id.get(child.columnId)
            if column is None or child.columnId in claimed:
                continue
            claimed[child.columnId] = group_id
            children.append(column.model_copy(update={"columnGroupShow": SHOW_RULE_MARKERS[child.showRule]}))

        if not children:
            logger.debug(f"Skipping column group {group_id} with no resolvable columns")
            continue

        anchor = min(position[column.colId] for column in children)
        anchored[anchor] = ColumnGroupNode(
            groupId=definition.id,
            headerName=definition.label,
            openByDefault=definition.openByDefault,
            children=children,
        )

    layout: List[LayoutNode] = []
    for index, column in enumerate(columns):
        if index in anchored:
            layout.append(anchored[index])
        if column.colId not in claimed:
            layout.append(column)
    return layout


def legacy_group_to_definition(raw: Dict[str, Any]) -> ColumnGroupDefinition:
    """Convert a group embedded in an old profile into a shared definition"""
    column_states = raw.get("columnStates") or {}
    children = []
    for column_id in raw.get("children") or []:
        if isinstance(column_id, dict):
            children.append(ColumnGroupChild.model_validate(column_id))
            continue
        rule = MARKER_SHOW_RULES.get(column_states.get(column_id), ShowRule.ALWAYS)
        children.append(ColumnGroupChild(columnId=column_id, showRule=rule))

    now = utc_now()
    return ColumnGroupDefinition(
        id=raw.get("groupId") or raw.get("id") or f"migrated_{new_id()[:12]}",
        label=raw.get("headerName") or raw.get("label") or "Migrated Group",
        openByDefault=raw.get("openByDefault", True) is not False,
        children=children,
        description="Migrated from profile-based storage",
        createdAt=now,
        updatedAt=now,
    )


class ColumnGroupStorage:
    """Column group definitions shared by every profile of one grid instance"""

    def __init__(self, db: Database):
        self.db = db

    @staticmethod
    def document_id(instance_id: str) -> str:
        return f"grid_column_groups_{instance_id}"

    async def load(self, instance_id: str) -> List[ColumnGroupDefinition]:
        try:
            record = await self.db.get(self.document_id(instance_id))
        except Exception as e:
            logger.error(f"Failed to load column groups for {instance_id}: {e}")
            return []
        if not record:
            return []
        configuration = ColumnGroupConfiguration.model_validate(record["config"])
        logger.debug(f"Loaded {len(configuration.groups)} column groups for grid {instance_id}")
        return configuration.groups

    async def save_all(self, instance_id: str, groups: List[ColumnGroupDefinition]):
        configuration = ColumnGroupConfiguration(groups=groups)
        document_id = self.document_id(instance_id)
        document = {
            "componentType": COLUMN_GROUPS_COMPONENT_TYPE,
            "componentSubType": COLUMN_GROUPS_SUB_TYPE,
            "instanceId": instance_id,
            "name": f"Column Groups for {instance_id}",
            "config": configuration.model_dump(mode="json"),
        }
        try:
            if await self.db.get(document_id):
                await self.db.update(document_id, document)
            else:
                await self.db.create({**document, "id": document_id})
        except Exception as e:
            logger.error(f"Failed to save column groups for {instance_id}: {e}")
            raise ColumnGroupStorageError(f"Failed to save column groups: {e}") from e
        logger.info(f"Saved {len(groups)} column groups for grid {instance_id}")

    async def save_group(self, instance_id: str, group: ColumnGroupDefinition) -> ColumnGroupDefinition:
        groups = await self.load(instance_id)
        now = utc_now()
        saved = group.model_copy(update={"updatedAt": now, "createdAt": group.createdAt or now})
        for index, existing in enumerate(groups):
            if existing.id == group.id:
                groups[index] = saved
                break
        else:
            groups.append(saved)
        await self.save_all(instance_id, groups)
        return saved

    async def delete_group(self, instance_id: str, group_id: str) -> bool:
        groups = await self.load(instance_id)
        remaining = [group for group in groups if group.id != group_id]
        if len(remaining) == len(groups):
            logger.warning(f"Column group not found for deletion: {group_id}")
            return False
        await self.save_all(instance_id, remaining)
        return True


class ColumnGroupService:
    """Builds and applies grouped column layouts for one grid instance.

    Holds the instance's group definitions, the base (ungrouped) columns and
    the profile's calculated columns, and remembers which group ids are
    currently applied.
    """

    def __init__(self, instance_id: str, storage: ColumnGroupStorage):
        self.instance_id = instance_id
        self.storage = storage
        self.definitions: Dict[str, ColumnGroupDefinition] = {}
        self.base_columns: List[ColumnDef] = []
        self.calculated_columns: List[CalculatedColumn] = []
        self.active_group_ids: List[str] = []
        self._layout_has_calculated = False

    def needs_layout(self, active_group_ids: List[str]) -> bool:
        """True when applying state must rebuild the column layout first"""
        return bool(active_group_ids or self.active_group_ids
                    or self.calculated_columns or self._layout_has_calculated)

    def set_base_columns(self, columns: List[ColumnDef]):
        self.base_columns = [column.model_copy() for column in columns]

    def set_calculated_columns(self, columns: List[CalculatedColumn]):
        self.calculated_columns = list(columns)

    async def load_definitions(self) -> List[ColumnGroupDefinition]:
        groups = await self.storage.load(self.instance_id)
        self.definitions = {group.id: group for group in groups}
        return groups

    async def save_group(self, group: ColumnGroupDefinition) -> ColumnGroupDefinition:
        saved = await self.storage.save_group(self.instance_id, group)
        self.definitions[saved.id] = saved
        return saved

    async def replace_groups(self, groups: List[ColumnGroupDefinition]):
        await self.storage.save_all(self.instance_id, groups)
        self.definitions = {group.id: group for group in groups}

    async def delete_group(self, group_id: str) -> bool:
        deleted = await self.storage.delete_group(self.instance_id, group_id)
        self.definitions.pop(group_id, None)
        return deleted

    def build_layout(self, active_group_ids: List[str]) -> List[LayoutNode]:
        return build_layout(self.base_columns, active_group_ids, self.definitions, self.calculated_columns)

    def apply_groups(self, surface: GridSurface, active_group_ids: List[str],
                     pending: Optional[PendingApplicationQueue] = None,
                     capabilities: Optional[SurfaceCapabilities] = None) -> List[LayoutNode]:
        """Rebuild the surface's columns around the active groups.

        Column state staged in ``pending`` is applied onto the new layout;
        without it the surface's current column state is carried over.
        Group open state comes last.
        """
        current_state = surface.get_column_state()
        if not self.base_columns:
            calculated = {column.field for column in self.calculated_columns}
            self.base_columns = [c for c in flatten_layout(surface.get_column_defs()) if c.colId not in calculated]

        unknown = [group_id for group_id in active_group_ids if group_id not in self.definitions]
        if unknown:
            logger.debug(f"Ignoring unknown column groups for {self.instance_id}: {unknown}")

        layout = self.build_layout(active_group_ids)
        surface.set_column_defs(layout)

        staged = pending.take_column_state() if pending is not None else None
        column_state = staged.columnState if staged is not None and staged.columnState else current_state
        if column_state:
            surface.apply_column_state(column_state, apply_order=True)

        if staged is not None and staged.columnGroupState:
            self.apply_group_open_state(surface, staged.columnGroupState, capabilities)

        self.active_group_ids = [group_id for group_id in active_group_ids if group_id in self.definitions]
        self._layout_has_calculated = bool(self.calculated_columns)
        logger.info(f"Applied {len(layout)} top-level columns with groups {self.active_group_ids} to {self.instance_id}")
        return layout

    def apply_group_open_state(self, surface: GridSurface, states: List[GroupOpenState],
                               capabilities: Optional[SurfaceCapabilities] = None):
        capabilities = capabilities or SurfaceCapabilities(surface)
        if capabilities.column_group_state:
            surface.set_column_group_state(states)
            return

        logger.debug("Surface has no group state accessor, toggling group member visibility instead")
        wanted = {state.groupId: state.open for state in states}
        current = {state.colId: state for state in surface.get_column_state()}
        changes: List[ColumnState] = []
        for column, group in iter_leaf_columns(surface.get_column_defs()):
            if group is None or group.groupId not in wanted or column.colId not in current:
                continue
            is_open = wanted[group.groupId]
            if column.columnGroupShow == "open":
                changes.append(current[column.colId].model_copy(update={"hide": not is_open}))
            elif column.columnGroupShow == "closed":
                changes.append(current[column.colId].model_copy(update={"hide": is_open}))
        if changes:
            surface.apply_column_state(changes)

    def extract_group_open_state(self, surface: GridSurface,
                                 capabilities: Optional[SurfaceCapabilities] = None) -> List[GroupOpenState]:
        capabilities = capabilities or SurfaceCapabilities(surface)
        if capabilities.column_group_state:
            return surface.get_column_group_state()

        logger.debug("Inferring column group open state from member visibility")
        hidden = {state.colId: state.hide for state in surface.get_column_state()}
        states = []
        for node in surface.get_column_defs():
            if not isinstance(node, ColumnGroupNode):
                continue
            open_members = [c for c in node.children if c.columnGroupShow == "open"]
            closed_members = [c for c in node.children if c.columnGroupShow == "closed"]
            if any(not hidden.get(c.colId, c.hide) for c in open_members):
                is_open = True
            elif any(not hidden.get(c.colId, c.hide) for c in closed_members):
                is_open = False
            else:
                is_open = node.openByDefault
            states.append(GroupOpenState(groupId=node.groupId, open=is_open))
        return states

    async def load_and_apply_group_open_state(self, instance_id: str, surface: GridSurface,
                                              active_group_ids: List[str],
                                              capabilities: Optional[SurfaceCapabilities] = None) -> List[GroupOpenState]:
        """Open or close the active groups according to their stored defaults"""
        groups = await self.storage.load(instance_id)
        if instance_id == self.instance_id:
            self.definitions = {group.id: group for group in groups}
        by_id = {group.id: group for group in groups}
        states = [
            GroupOpenState(groupId=group_id, open=by_id[group_id].openByDefault)
            for group_id in active_group_ids if group_id in by_id
        ]
        if states:
            self.apply_group_open_state(surface, states, capabilities)
        return states

    async def migrate_legacy_groups(self, instance_id: str, legacy_groups: Optional[List[Dict[str, Any]]]) -> List[str]:
        """Move groups embedded in a profile into instance storage.

        Returns the ids of the migrated groups that were active. Groups whose
        id already exists in storage are not stored twice.
        """
        if not legacy_groups:
            return []

        logger.info(f"Migrating {len(legacy_groups)} profile column groups to grid {instance_id}")
        existing = await self.storage.load(instance_id)
        known = {group.id for group in existing}
        active_ids: List[str] = []
        added = 0

        for raw in legacy_groups:
            definition = legacy_group_to_definition(raw)
            if definition.id not in known:
                existing.append(definition)
                known.add(definition.id)
                added += 1
            if raw.get("isActive", True) is not False and definition.id not in active_ids:
                active_ids.append(definition.id)

        if added:
            await self.storage.save_all(instance_id, existing)
        if instance_id == self.instance_id:
            self.definitions = {group.id: group for group in existing}
        return active_ids

    def extract_groups_from_layout(self, layout: List[LayoutNode]) -> List[ColumnGroupDefinition]:
        groups = []
        for node in layout:
            if not isinstance(node, ColumnGroupNode) or not node.children:
                continue
            groups.append(ColumnGroupDefinition(
                id=node.groupId or f"group_{new_id()[:12]}",
                label=node.headerName or "Unnamed Group",
                openByDefault=node.openByDefault,
                children=[
                    ColumnGroupChild(columnId=child.colId,
                                     showRule=MARKER_SHOW_RULES.get(child.columnGroupShow, ShowRule.ALWAYS))
                    for child in node.children
                ],
            ))
        return groups
