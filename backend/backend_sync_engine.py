# backend/sync_engine.py - Per-grid engine wiring the stream, state and profiles together

import asyncio
import time
from typing import Dict, Any, Optional, Callable
import logging

from backend_database import Database
from backend_models import (
    Profile, GridState, ExtractOptions, ApplyOptions, PendingApplication,
    ConnectionState, ConnectionStatus, ProfileLoadResult, ProviderConfig,
)
from backend_surface import GridSurface, SurfaceCapabilities
from backend_channel import StreamingChannel, ChannelConnector, DatasourceStore, ProviderConfigCache
from backend_stream_reconciler import StreamReconciler
from backend_column_groups import ColumnGroupService, ColumnGroupStorage, flatten_layout
from backend_grid_state import GridStateManager
from backend_pending_queue import PendingApplicationQueue, FlushAborted
from backend_profile_store import ProfileStoreAdapter, ProfileStoreError

logger = logging.getLogger(__name__)

LAYOUT_ONLY = ApplyOptions(**{name: name == "applyColumnState" for name in ApplyOptions.model_fields})
WITHOUT_LAYOUT = ApplyOptions(applyColumnState=False)

class GridSyncEngine:
    """Owns the stream, state and profile machinery of one grid instance.

    Profiles are always applied through the pending queue: when the surface
    is not ready the profile waits there, and a newer load replaces it.
    """

    def __init__(self, instance_id: str, db: Database, profile_store: ProfileStoreAdapter,
                 channel: StreamingChannel, surface: Optional[GridSurface] = None,
                 clock: Callable[[], float] = time.monotonic,
                 connect_timeout: Optional[float] = None):
        self.instance_id = instance_id
        self.profile_store = profile_store
        self.channel = channel
        self.provider_configs = ProviderConfigCache(DatasourceStore(db))

        self.pending = PendingApplicationQueue(handler=self._apply_pending)
        self.column_groups = ColumnGroupService(instance_id, ColumnGroupStorage(db))
        self.grid_state = GridStateManager(self.column_groups, self.pending)
        self.reconciler = StreamReconciler(clock=clock)
        self.connector = ChannelConnector(channel, timeout=connect_timeout)

        self.surface: Optional[GridSurface] = None
        self.capabilities = SurfaceCapabilities()
        self.active_profile: Optional[Profile] = None
        self.provider_id: Optional[str] = None
        self._load_generation = 0
        self._flush_task: Optional[asyncio.Task] = None
        self._snapshot_deadline: Optional[asyncio.Task] = None

        if surface is not None:
            self.attach_surface(surface)

    # Surface lifecycle
    def attach_surface(self, surface: GridSurface):
        self.surface = surface
        self.capabilities = SurfaceCapabilities(surface)
        self.grid_state.attach_surface(surface)
        self.reconciler.attach_surface(surface, self.capabilities)
        if not self.column_groups.base_columns:
            self.column_groups.set_base_columns(flatten_layout(surface.get_column_defs()))
        surface.add_ready_listener(self._on_ready_signal)
        logger.info(f"Surface attached to grid {self.instance_id}")

    def detach_surface(self):
        self.grid_state.detach_surface()
        self.reconciler.detach_surface()
        self.surface = None
        self.capabilities = SurfaceCapabilities()

    def _on_ready_signal(self, surface: GridSurface):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("Ready signal outside an event loop, flush deferred to on_surface_ready()")
            return
        self._flush_task = loop.create_task(self.on_surface_ready())

    async def on_surface_ready(self) -> bool:
        if self.surface is None:
            return False
        return await self.pending.flush_on_ready(self.surface)

    async def mark_surface_ready(self) -> bool:
        """Signal readiness on the attached surface and wait for the resulting flush"""
        if self.surface is None:
            return False
        self.surface.mark_ready()
        task, self._flush_task = self._flush_task, None
        if task is None:
            return False
        return await task

    # Streaming
    async def connect(self, provider_id: str) -> ConnectionState:
        if self.provider_id and self.provider_id != provider_id:
            previous = self.provider_id
            await self.disconnect()
            self.provider_configs.invalidate(previous)

        config = await self.provider_configs.get(provider_id)
        if config is None:
            logger.error(f"Unknown provider {provider_id} for grid {self.instance_id}")
            self.connector.state = self.connector.state.model_copy(update={
                "status": ConnectionStatus.FAILED, "providerId": provider_id, "error": "Unknown provider"
            })
            return self.connector.state

        self._apply_provider_columns(config)
        self.reconciler.reset()
        self.reconciler.configure(config.keyColumn, config.snapshotEndToken, config.id)
        self.channel.subscribe(config.id, self.reconciler.publish)

        state = await self.connector.connect(config)
        if state.status != ConnectionStatus.CONNECTED:
            self.channel.unsubscribe(config.id, self.reconciler.publish)
            return state

        self.provider_id = config.id
        channel_status = await self.channel.get_status(config.id)
        if channel_status.isSnapshotComplete:
            await self.reconciler.request_cached_snapshot(self.channel, config.id)
        self._arm_snapshot_deadline(config)
        logger.info(f"Grid {self.instance_id} connected to provider {config.id} "
                    f"({config.listenerTopic or config.websocketUrl or 'in-process'})")
        return state

    async def disconnect(self) -> ConnectionState:
        self._cancel_snapshot_deadline()
        if self.provider_id:
            self.channel.unsubscribe(self.provider_id, self.reconciler.publish)
        state = await self.connector.disconnect()
        self.reconciler.reset()
        self.provider_id = None
        return state

    async def process_stream(self) -> int:
        return await self.reconciler.drain()

    def _apply_provider_columns(self, config: ProviderConfig):
        if not config.columnDefinitions or self.surface is None or self.surface.get_column_defs():
            return
        self.surface.set_column_defs(list(config.columnDefinitions))
        self.column_groups.set_base_columns(list(config.columnDefinitions))
        logger.info(f"Grid {self.instance_id} using {len(config.columnDefinitions)} columns from provider {config.id}")

    def _arm_snapshot_deadline(self, config: ProviderConfig):
        self._cancel_snapshot_deadline()
        if self.reconciler.status.isComplete or config.snapshotTimeoutMs <= 0:
            return
        self._snapshot_deadline = asyncio.get_running_loop().create_task(
            self._expire_snapshot(config.snapshotTimeoutMs / 1000.0, self.reconciler.session_id)
        )

    def _cancel_snapshot_deadline(self):
        if self._snapshot_deadline is not None:
            self._snapshot_deadline.cancel()
            self._snapshot_deadline = None

    async def _expire_snapshot(self, timeout: float, session_id: int):
        """Complete a snapshot that has not ended within the provider's timeout"""
        await asyncio.sleep(timeout)
        if session_id != self.reconciler.session_id:
            return
        await self.reconciler.drain()
        if not self.reconciler.status.isComplete:
            logger.warning(f"Snapshot for grid {self.instance_id} timed out after {timeout}s, "
                           f"completing with {self.reconciler.status.rowCount} rows")
            self.reconciler.mark_snapshot_complete()
        self._snapshot_deadline = None

    # Profiles
    async def load_profile(self, profile_id: str) -> ProfileLoadResult:
        self._load_generation += 1
        generation = self._load_generation

        profile = await self.profile_store.get(profile_id)
        if generation != self._load_generation:
            return ProfileLoadResult.SUPERSEDED
        if profile is None:
            logger.warning(f"Profile {profile_id} not found for grid {self.instance_id}")
            return ProfileLoadResult.NOT_FOUND

        profile = await self._migrate_legacy_groups(profile)
        if generation != self._load_generation:
            logger.info(f"Load of profile {profile_id} superseded by a newer request")
            return ProfileLoadResult.SUPERSEDED

        self.pending.enqueue(profile)
        if self.surface is None or not self.surface.is_ready():
            logger.info(f"Profile {profile.name} queued until grid {self.instance_id} is ready")
            return ProfileLoadResult.QUEUED

        applied = await self.pending.flush_on_ready(self.surface)
        if not applied:
            return ProfileLoadResult.FAILED if self.surface.is_ready() else ProfileLoadResult.QUEUED

        if profile.autoConnect and profile.dataSourceId and profile.dataSourceId != self.provider_id:
            await self.connect(profile.dataSourceId)
        return ProfileLoadResult.APPLIED

    async def load_default_profile(self) -> Optional[ProfileLoadResult]:
        profile = await self.profile_store.get_default(self.instance_id)
        if profile is None:
            return None
        return await self.load_profile(profile.id)

    async def _migrate_legacy_groups(self, profile: Profile) -> Profile:
        if not profile.columnGroups:
            return profile

        migrated_ids = await self.column_groups.migrate_legacy_groups(self.instance_id, profile.columnGroups)
        active_ids = profile.activeColumnGroupIds or migrated_ids
        try:
            await self.profile_store.update(profile.id, {"activeColumnGroupIds": active_ids, "columnGroups": None})
        except ProfileStoreError as e:
            logger.warning(f"Could not persist migrated column groups for profile {profile.id}: {e}")
        return profile.model_copy(update={"activeColumnGroupIds": active_ids, "columnGroups": None})

    async def _apply_pending(self, entry: PendingApplication, surface: GridSurface):
        if entry.profile is None:
            if entry.gridState is not None:
                self._apply_in_stages(entry.gridState, surface)
            return

        profile = entry.profile
        self.column_groups.set_calculated_columns(profile.calculatedColumns)
        await self.column_groups.load_definitions()

        state = (entry.gridState or GridState()).model_copy(
            update={"activeColumnGroupIds": list(profile.activeColumnGroupIds)}
        )
        if not self._apply_in_stages(state, surface):
            logger.warning(f"Profile {profile.name} applied with errors")

        if profile.activeColumnGroupIds and not state.columnGroupState:
            await self.column_groups.load_and_apply_group_open_state(
                self.instance_id, surface, profile.activeColumnGroupIds, self.capabilities
            )

        self.active_profile = profile
        logger.info(f"Profile {profile.name} applied to grid {self.instance_id}")

    def _apply_in_stages(self, state: GridState, surface: GridSurface) -> bool:
        """Apply the column layout, then the remaining facets if the surface is still ready"""
        layout_ok = self.grid_state.apply(state, LAYOUT_ONLY)
        if not surface.is_ready():
            raise FlushAborted("surface became unready after the column layout step")
        return self.grid_state.apply(state, WITHOUT_LAYOUT) and layout_ok

    async def save_current_profile(self, name: Optional[str] = None, save_as_new: bool = False) -> Profile:
        """Extract the grid's state and persist it into the active profile"""
        state = self.grid_state.extract()
        if state is None:
            raise ProfileStoreError("No grid state available to save")

        base = self.active_profile
        fields: Dict[str, Any] = {
            "gridState": state,
            "activeColumnGroupIds": list(state.activeColumnGroupIds),
            "instanceId": self.instance_id,
        }
        if self.provider_id:
            fields["dataSourceId"] = self.provider_id

        if base is None:
            profile = Profile(name=name or "Default", **fields)
            await self.profile_store.save(profile)
        elif save_as_new:
            profile = await self.profile_store.save_as(
                base.model_copy(update=fields), name or f"{base.name} (Copy)"
            )
        else:
            profile = base.model_copy(update={**fields, "name": name or base.name})
            await self.profile_store.save(profile)

        self.active_profile = await self.profile_store.get(profile.id) or profile
        return self.active_profile

    # Grid state
    def extract_state(self, options: Optional[ExtractOptions] = None) -> Optional[GridState]:
        return self.grid_state.extract(options)

    async def apply_state(self, state: GridState, options: Optional[ApplyOptions] = None) -> bool:
        if self.surface is None or not self.surface.is_ready():
            self.pending.enqueue(state)
            return False
        await self.column_groups.load_definitions()
        return self.grid_state.apply(state, options)

    def reset_grid(self) -> bool:
        return self.grid_state.reset_to_default()

    def status(self) -> Dict[str, Any]:
        return {
            "instanceId": self.instance_id,
            "connection": self.connector.state.model_dump(mode="json"),
            "stream": self.reconciler.status.model_dump(mode="json"),
            "pending": self.pending.state.value,
            "activeProfileId": self.active_profile.id if self.active_profile else None,
            "surfaceReady": bool(self.surface and self.surface.is_ready()),
            "capabilities": self.capabilities.as_dict(),
            "rowCount": self.surface.get_row_count() if self.surface else 0,
        }

    async def close(self):
        await self.disconnect()
        self.pending.discard()
        if self._flush_task is not None:
            self._flush_task.cancel()
            self._flush_task = None
