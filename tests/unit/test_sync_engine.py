import asyncio
from contextlib import asynccontextmanager

import pytest

from backend_models import (
    Profile, GridState, ColumnState, ColumnDef, ColumnGroupNode, ProviderConfig, ConnectionStatus,
    ProfileLoadResult, SnapshotMode,
)
from backend_channel import InMemoryStreamingChannel, DatasourceStore
from backend_column_groups import ColumnGroupStorage
from backend_profile_store import ProfileStoreAdapter
from backend_surface import HeadlessGridSurface
from backend_sync_engine import GridSyncEngine


@pytest.fixture()
def open_engine(open_db, base_columns, clock):
    """Engine over a fresh store, a shared in-memory channel and a headless surface"""
    @asynccontextmanager
    async def _open(ready=True, channel=None):
        async with open_db() as db:
            surface = HeadlessGridSurface(column_defs=base_columns, ready=ready)
            engine = GridSyncEngine("grid-1", db, ProfileStoreAdapter(db),
                                    channel or InMemoryStreamingChannel(), surface=surface, clock=clock)
            try:
                yield engine, db, surface
            finally:
                await engine.close()
    return _open


class TestProfileLoading:
    def test_profile_waits_for_ready_surface(self, open_engine):
        async def scenario():
            async with open_engine(ready=False) as (engine, db, surface):
                profile = Profile(name="Queued", instanceId="grid-1", gridState=GridState(quickFilter="abc"))
                await engine.profile_store.save(profile)

                result = await engine.load_profile(profile.id)
                before = surface.get_quick_filter()
                flushed = await engine.mark_surface_ready()
                return result, before, flushed, surface.get_quick_filter(), engine.active_profile

        result, before, flushed, after, active = asyncio.run(scenario())
        assert result == ProfileLoadResult.QUEUED
        assert before is None
        assert flushed is True
        assert after == "abc"
        assert active.name == "Queued"

    def test_only_latest_queued_profile_is_applied(self, open_engine):
        async def scenario():
            async with open_engine(ready=False) as (engine, db, surface):
                first = Profile(name="A", instanceId="grid-1", gridState=GridState(quickFilter="A"))
                second = Profile(name="B", instanceId="grid-1", gridState=GridState(quickFilter="B"))
                await engine.profile_store.save(first)
                await engine.profile_store.save(second)

                applied = []
                original_apply = engine.grid_state.apply

                def recording_apply(state, options=None):
                    applied.append(state.quickFilter)
                    return original_apply(state, options)

                engine.grid_state.apply = recording_apply
                await engine.load_profile(first.id)
                await engine.load_profile(second.id)
                await engine.mark_surface_ready()
                return applied, engine.active_profile.name

        applied, active_name = asyncio.run(scenario())
        assert set(applied) == {"B"}
        assert active_name == "B"

    def test_overlapping_loads_supersede_older(self, open_engine):
        async def scenario():
            async with open_engine() as (engine, db, surface):
                first = Profile(name="A", instanceId="grid-1")
                second = Profile(name="B", instanceId="grid-1")
                await engine.profile_store.save(first)
                await engine.profile_store.save(second)
                results = await asyncio.gather(engine.load_profile(first.id), engine.load_profile(second.id))
                return results, engine.active_profile.name

        results, active_name = asyncio.run(scenario())
        assert results == [ProfileLoadResult.SUPERSEDED, ProfileLoadResult.APPLIED]
        assert active_name == "B"

    def test_flush_stops_when_surface_turns_unready_mid_apply(self, open_engine):
        async def scenario():
            async with open_engine() as (engine, db, surface):
                profile = Profile(name="Desk", instanceId="grid-1", gridState=GridState(
                    columnState=[ColumnState(colId="price", hide=True)], quickFilter="desk",
                ))
                await engine.profile_store.save(profile)

                original_apply = surface.apply_column_state

                def apply_then_unready(state, apply_order=False):
                    surface.apply_column_state = original_apply
                    original_apply(state, apply_order=apply_order)
                    surface.mark_unready()

                surface.apply_column_state = apply_then_unready
                result = await engine.load_profile(profile.id)
                interrupted = surface.get_quick_filter(), engine.pending.peek(), engine.active_profile
                flushed = await engine.mark_surface_ready()
                return result, interrupted, flushed, surface.get_quick_filter(), engine.active_profile

        result, interrupted, flushed, quick_filter, active = asyncio.run(scenario())
        assert result == ProfileLoadResult.QUEUED
        # layout went in, the rest of the state waited for the next ready signal
        assert interrupted[0] is None
        assert interrupted[1].profile.name == "Desk"
        assert interrupted[2] is None
        assert flushed is True
        assert quick_filter == "desk"
        assert active.name == "Desk"

    def test_missing_profile(self, open_engine):
        async def scenario():
            async with open_engine() as (engine, db, surface):
                return await engine.load_profile("missing")

        assert asyncio.run(scenario()) == ProfileLoadResult.NOT_FOUND

    def test_grouped_profile_keeps_hidden_child(self, open_engine, pricing_group):
        async def scenario():
            async with open_engine() as (engine, db, surface):
                await ColumnGroupStorage(db).save_group("grid-1", pricing_group)
                profile = Profile(
                    name="Grouped",
                    instanceId="grid-1",
                    activeColumnGroupIds=["pricing"],
                    gridState=GridState(columnState=[
                        ColumnState(colId="id", width=80),
                        ColumnState(colId="price", width=100, hide=True),
                    ]),
                )
                await engine.profile_store.save(profile)
                result = await engine.load_profile(profile.id)
                return result, surface.get_column_defs(), surface.get_column_group_state()

        result, layout, group_state = asyncio.run(scenario())
        assert result == ProfileLoadResult.APPLIED
        group = next(node for node in layout if isinstance(node, ColumnGroupNode))
        assert group.groupId == "pricing"
        assert {child.colId: child.hide for child in group.children}["price"] is True
        assert group_state[0].open is True

    def test_legacy_groups_are_migrated_on_load(self, open_engine):
        async def scenario():
            async with open_engine() as (engine, db, surface):
                profile = Profile(name="Old", instanceId="grid-1", columnGroups=[
                    {"groupId": "legacy", "headerName": "Legacy", "children": ["price", "quantity"]},
                ])
                await engine.profile_store.save(profile)
                result = await engine.load_profile(profile.id)
                stored = await engine.profile_store.get(profile.id)
                groups = await ColumnGroupStorage(db).load("grid-1")
                return result, stored, groups, surface.get_column_defs()

        result, stored, groups, layout = asyncio.run(scenario())
        assert result == ProfileLoadResult.APPLIED
        assert stored.columnGroups is None
        assert stored.activeColumnGroupIds == ["legacy"]
        assert [g.id for g in groups] == ["legacy"]
        assert any(isinstance(node, ColumnGroupNode) and node.groupId == "legacy" for node in layout)

    def test_default_profile(self, open_engine):
        async def scenario():
            async with open_engine() as (engine, db, surface):
                none_yet = await engine.load_default_profile()
                await engine.profile_store.save(Profile(name="Default", instanceId="grid-1", isDefault=True))
                return none_yet, await engine.load_default_profile()

        none_yet, result = asyncio.run(scenario())
        assert none_yet is None
        assert result == ProfileLoadResult.APPLIED


class TestSavingProfiles:
    def test_save_without_active_profile_creates_one(self, open_engine):
        async def scenario():
            async with open_engine() as (engine, db, surface):
                surface.set_quick_filter("fresh")
                saved = await engine.save_current_profile()
                return saved, await engine.profile_store.get(saved.id)

        saved, stored = asyncio.run(scenario())
        assert saved.name == "Default"
        assert stored.instanceId == "grid-1"
        assert stored.gridState.quickFilter == "fresh"

    def test_save_updates_active_profile_and_save_as_copies(self, open_engine):
        async def scenario():
            async with open_engine() as (engine, db, surface):
                profile = Profile(name="Desk", instanceId="grid-1", gridState=GridState(quickFilter="abc"))
                await engine.profile_store.save(profile)
                await engine.load_profile(profile.id)

                surface.set_quick_filter("changed")
                updated = await engine.save_current_profile()
                copy = await engine.save_current_profile(save_as_new=True)
                return profile, updated, copy, await engine.profile_store.get(profile.id)

        profile, updated, copy, stored = asyncio.run(scenario())
        assert updated.id == profile.id
        assert stored.gridState.quickFilter == "changed"
        assert copy.id != profile.id
        assert copy.name == "Desk (Copy)"


class TestStreaming:
    def test_connect_then_stream(self, open_engine, records):
        channel = InMemoryStreamingChannel()

        async def scenario():
            async with open_engine(channel=channel) as (engine, db, surface):
                await DatasourceStore(db).save(ProviderConfig(id="prices", name="Prices"))
                state = await engine.connect("prices")

                channel.publish("prices", records(3))
                channel.complete_snapshot("prices")
                processed = await engine.process_stream()
                loaded = surface.get_row_count()

                channel.publish("prices", [{"id": "T1", "price": 50.0}])
                await engine.process_stream()
                return state, processed, loaded, surface.get_row("T1"), engine.status()

        state, processed, loaded, updated_row, status = asyncio.run(scenario())
        assert state.status == ConnectionStatus.CONNECTED
        assert processed == 2
        assert loaded == 3
        assert updated_row["price"] == 50.0
        assert status["stream"]["rowCount"] == 3
        assert status["connection"]["status"] == "connected"

    def test_provider_key_column_identifies_rows(self, open_engine):
        channel = InMemoryStreamingChannel()

        async def scenario():
            async with open_engine(channel=channel) as (engine, db, surface):
                await DatasourceStore(db).save(ProviderConfig(id="quotes", keyColumn="symbol"))
                await engine.connect("quotes")

                channel.publish("quotes", [{"symbol": "AAA", "bid": 1.0}, {"symbol": "BBB", "bid": 2.0}])
                channel.complete_snapshot("quotes")
                await engine.process_stream()
                loaded = surface.get_row_count()

                channel.publish("quotes", [{"symbol": "AAA", "bid": 1.5}, {"symbol": "CCC", "bid": 3.0}])
                await engine.process_stream()
                return loaded, surface.get_row_count(), surface.get_row("AAA"), engine.reconciler.status

        loaded, row_count, row, status = asyncio.run(scenario())
        assert loaded == 2
        assert row_count == 3
        assert row["bid"] == 1.5
        assert status.rowCount == 3

    def test_snapshot_completes_after_provider_timeout(self, open_engine, records):
        channel = InMemoryStreamingChannel()

        async def scenario():
            async with open_engine(channel=channel) as (engine, db, surface):
                await DatasourceStore(db).save(ProviderConfig(id="prices", snapshotTimeoutMs=20))
                await engine.connect("prices")
                channel.publish("prices", records(3))
                waiting = engine.reconciler.status.mode
                await asyncio.sleep(0.2)
                return waiting, engine.reconciler.status, surface.get_row_count()

        waiting, status, row_count = asyncio.run(scenario())
        assert waiting != SnapshotMode.COMPLETE
        assert status.mode == SnapshotMode.COMPLETE
        assert status.isComplete is True
        assert row_count == 3

    def test_provider_columns_used_when_surface_has_none(self, open_db, clock):
        config = ProviderConfig(id="quotes", keyColumn="symbol", columnDefinitions=[
            ColumnDef(field="symbol", headerName="Symbol"), ColumnDef(field="bid", headerName="Bid"),
        ])

        async def scenario():
            async with open_db() as db:
                surface = HeadlessGridSurface(ready=True)
                engine = GridSyncEngine("grid-1", db, ProfileStoreAdapter(db), InMemoryStreamingChannel(),
                                        surface=surface, clock=clock)
                await DatasourceStore(db).save(config)
                await engine.connect("quotes")
                columns = [c.colId for c in surface.get_column_state()]
                await engine.close()
                return columns

        assert asyncio.run(scenario()) == ["symbol", "bid"]

    def test_late_join_uses_cached_snapshot(self, open_engine, records):
        channel = InMemoryStreamingChannel()
        config = ProviderConfig(id="prices", name="Prices")

        async def scenario():
            await channel.connect(config)
            channel.publish("prices", records(4))
            channel.complete_snapshot("prices")
            async with open_engine(channel=channel) as (engine, db, surface):
                await DatasourceStore(db).save(config)
                await engine.connect("prices")
                return surface.get_row_count(), engine.reconciler.status.mode

        row_count, mode = asyncio.run(scenario())
        assert row_count == 4
        assert mode == SnapshotMode.COMPLETE

    def test_disconnect_clears_rows(self, open_engine, records):
        channel = InMemoryStreamingChannel()

        async def scenario():
            async with open_engine(channel=channel) as (engine, db, surface):
                await DatasourceStore(db).save(ProviderConfig(id="prices"))
                await engine.connect("prices")
                channel.publish("prices", records(2))
                channel.complete_snapshot("prices")
                await engine.process_stream()
                state = await engine.disconnect()
                return state, surface.get_row_count(), engine.reconciler.status.mode

        state, row_count, mode = asyncio.run(scenario())
        assert state.status == ConnectionStatus.DISCONNECTED
        assert row_count == 0
        assert mode == SnapshotMode.IDLE

    def test_switching_provider_drops_old_subscription(self, open_engine, records):
        channel = InMemoryStreamingChannel()

        async def scenario():
            async with open_engine(channel=channel) as (engine, db, surface):
                store = DatasourceStore(db)
                await store.save(ProviderConfig(id="a"))
                await store.save(ProviderConfig(id="b"))
                await engine.connect("a")
                await engine.connect("b")
                channel.publish("a", records(2))
                return await engine.process_stream(), engine.provider_id, engine.reconciler.status.sourceId

        processed, provider_id, source_id = asyncio.run(scenario())
        assert processed == 0
        assert provider_id == "b"
        assert source_id == "b"

    def test_unknown_provider_fails(self, open_engine):
        async def scenario():
            async with open_engine() as (engine, db, surface):
                return await engine.connect("missing")

        state = asyncio.run(scenario())
        assert state.status == ConnectionStatus.FAILED
        assert state.error == "Unknown provider"

    def test_auto_connect_profile(self, open_engine):
        async def scenario():
            async with open_engine() as (engine, db, surface):
                await DatasourceStore(db).save(ProviderConfig(id="prices"))
                profile = Profile(name="Live", instanceId="grid-1", dataSourceId="prices", autoConnect=True)
                await engine.profile_store.save(profile)
                await engine.load_profile(profile.id)
                return engine.provider_id, engine.connector.state.status

        provider_id, status = asyncio.run(scenario())
        assert provider_id == "prices"
        assert status == ConnectionStatus.CONNECTED


def test_state_applied_when_surface_becomes_ready(open_engine):
    async def scenario():
        async with open_engine(ready=False) as (engine, db, surface):
            applied_now = await engine.apply_state(GridState(quickFilter="later"))
            waiting = engine.pending.peek()
            flushed = await engine.mark_surface_ready()
            return applied_now, waiting, flushed, surface.get_quick_filter()

    applied_now, waiting, flushed, quick_filter = asyncio.run(scenario())
    assert applied_now is False
    assert waiting.gridState.quickFilter == "later"
    assert flushed is True
    assert quick_filter == "later"


def test_reset_grid(open_engine):
    async def scenario():
        async with open_engine() as (engine, db, surface):
            await engine.apply_state(GridState(quickFilter="x"))
            return engine.reset_grid(), surface.get_quick_filter()

    assert asyncio.run(scenario()) == (True, None)
