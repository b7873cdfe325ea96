import asyncio
import json

import pytest

from backend_models import Profile, ProfileFilter, GridState, ColumnState
from backend_profile_store import (
    ProfileStoreAdapter, ProfileStoreError, ProfileLockedError, ProfileNotFoundError, ProfileImportError,
    slugify,
)


def make_profile(**overrides):
    values = {
        "name": "My Blotter",
        "instanceId": "grid-1",
        "gridState": GridState(columnState=[ColumnState(colId="price", hide=True)]),
        "activeColumnGroupIds": ["pricing"],
    }
    values.update(overrides)
    return Profile(**values)


def test_save_creates_then_updates(open_db):
    profile = make_profile()

    async def scenario():
        async with open_db() as db:
            store = ProfileStoreAdapter(db)
            await store.save(profile)
            created = await store.get(profile.id)
            await store.save(profile.model_copy(update={"name": "Renamed"}))
            updated = await store.get(profile.id)
            record = await db.get(profile.id)
            return created, updated, record

    created, updated, record = asyncio.run(scenario())
    assert created.name == "My Blotter"
    assert created.gridState.columnState[0].hide is True
    assert created.createdAt is not None
    assert updated.name == "Renamed"
    assert updated.createdAt == created.createdAt
    assert record["version"] == 2
    assert record["componentType"] == "DataGridStompShared"
    assert record["componentSubType"] == "profile"


def test_query_by_instance_and_default(open_db):
    async def scenario():
        async with open_db() as db:
            store = ProfileStoreAdapter(db)
            await store.save(make_profile(name="A"))
            await store.save(make_profile(name="B", isDefault=True))
            await store.save(make_profile(name="C", instanceId="grid-2"))
            grid_one = await store.query(ProfileFilter(instanceId="grid-1"))
            default = await store.get_default("grid-1")
            return grid_one, default

    grid_one, default = asyncio.run(scenario())
    assert sorted(p.name for p in grid_one) == ["A", "B"]
    assert default.name == "B"


def test_delete_is_soft(open_db):
    profile = make_profile()

    async def scenario():
        async with open_db() as db:
            store = ProfileStoreAdapter(db)
            await store.save(profile)
            await store.delete(profile.id)
            visible = await store.query(ProfileFilter(instanceId="grid-1"))
            everything = await store.query(ProfileFilter(instanceId="grid-1", includeDeleted=True))
            return await store.get(profile.id), visible, everything

    fetched, visible, everything = asyncio.run(scenario())
    assert fetched is None
    assert visible == []
    assert everything[0].isDeleted is True


def test_saving_over_deleted_profile_restores_it(open_db):
    profile = make_profile()

    async def scenario():
        async with open_db() as db:
            store = ProfileStoreAdapter(db)
            await store.save(profile)
            await store.delete(profile.id)
            await store.save(profile)
            return await store.get(profile.id)

    restored = asyncio.run(scenario())
    assert restored is not None
    assert restored.isDeleted is False


def test_locked_profile_rejects_changes(open_db):
    profile = make_profile(isLocked=True)

    async def scenario():
        async with open_db() as db:
            store = ProfileStoreAdapter(db)
            await store.save(profile)
            with pytest.raises(ProfileLockedError):
                await store.save(profile.model_copy(update={"name": "Changed"}))
            with pytest.raises(ProfileLockedError):
                await store.update(profile.id, {"name": "Changed"})
            with pytest.raises(ProfileLockedError):
                await store.delete(profile.id)
            unlocked = await store.update(profile.id, {"isLocked": False})
            renamed = await store.update(profile.id, {"name": "Changed"})
            return unlocked, renamed

    unlocked, renamed = asyncio.run(scenario())
    assert unlocked.isLocked is False
    assert renamed.name == "Changed"


def test_missing_profile_errors(open_db):
    async def scenario():
        async with open_db() as db:
            store = ProfileStoreAdapter(db)
            assert await store.get("missing") is None
            with pytest.raises(ProfileNotFoundError):
                await store.update("missing", {"name": "x"})
            with pytest.raises(ProfileNotFoundError):
                await store.delete("missing")
            with pytest.raises(ProfileNotFoundError):
                await store.export_profile("missing")

    asyncio.run(scenario())


def test_set_default_clears_previous_default(open_db):
    first = make_profile(name="First", isDefault=True)
    second = make_profile(name="Second")

    async def scenario():
        async with open_db() as db:
            store = ProfileStoreAdapter(db)
            await store.save(first)
            await store.save(second)
            await store.set_default(second.id)
            return await store.get(first.id), await store.get(second.id)

    old_default, new_default = asyncio.run(scenario())
    assert old_default.isDefault is False
    assert new_default.isDefault is True


def test_save_as_copies_under_new_id(open_db):
    original = make_profile(isDefault=True, isLocked=True)

    async def scenario():
        async with open_db() as db:
            store = ProfileStoreAdapter(db)
            await store.save(original)
            return await store.save_as(original, "Copy")

    copy = asyncio.run(scenario())
    assert copy.id != original.id
    assert copy.name == "Copy"
    assert copy.isDefault is False
    assert copy.isLocked is False
    assert copy.activeColumnGroupIds == ["pricing"]


def test_export_then_import_into_another_instance(open_db):
    profile = make_profile(name="Rates Blotter / EU")

    async def scenario():
        async with open_db() as db:
            store = ProfileStoreAdapter(db)
            await store.save(profile)
            filename, text = await store.export_profile(profile.id)
            await store.delete(profile.id)
            imported = await store.import_profile(text, instance_id="grid-9")
            return filename, text, imported

    filename, text, imported = asyncio.run(scenario())
    document = json.loads(text)
    assert filename == "rates-blotter-eu.json"
    assert document["componentType"] == "DataGridStompShared"
    assert "exportedAt" in document
    assert document["profile"]["name"] == "Rates Blotter / EU"
    assert imported.instanceId == "grid-9"
    assert imported.gridState.columnState[0].colId == "price"


@pytest.mark.parametrize("text", [
    "not json",
    json.dumps({"hello": "world"}),
    json.dumps({"componentType": "SomethingElse", "profile": {"name": "x"}}),
])
def test_import_rejects_bad_documents(open_db, text):
    async def scenario():
        async with open_db() as db:
            with pytest.raises(ProfileImportError):
                await ProfileStoreAdapter(db).import_profile(text)

    asyncio.run(scenario())


def test_reads_degrade_when_store_is_closed(open_db):
    async def scenario():
        async with open_db() as db:
            store = ProfileStoreAdapter(db)
        return await store.get("any"), await store.query()

    assert asyncio.run(scenario()) == (None, [])


def test_writes_report_store_failures(open_db):
    profile = make_profile()

    async def scenario():
        async with open_db() as db:
            store = ProfileStoreAdapter(db)
            await store.save(profile)
        raised = []
        for write in (store.update(profile.id, {"name": "x"}), store.delete(profile.id), store.set_default(profile.id)):
            try:
                await write
            except ProfileStoreError as e:
                raised.append(type(e))
        return raised

    # a broken store is a failure, not a missing profile
    assert asyncio.run(scenario()) == [ProfileStoreError] * 3


def test_slugify():
    assert slugify("  My Profile!! ") == "my-profile"
    assert slugify("***") == "profile"
