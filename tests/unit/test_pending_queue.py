import asyncio

from backend_models import Profile, GridState, ColumnState
from backend_pending_queue import PendingApplicationQueue, PendingState, FlushAborted
from backend_surface import HeadlessGridSurface


def test_enqueue_moves_to_queued():
    queue = PendingApplicationQueue()
    assert queue.is_empty()
    assert queue.state == PendingState.EMPTY

    queue.enqueue(Profile(name="A"))

    assert not queue.is_empty()
    assert queue.state == PendingState.QUEUED


def test_second_enqueue_replaces_first():
    applied = []

    async def handler(entry, surface):
        applied.append(entry.profile.name)

    queue = PendingApplicationQueue(handler)
    surface = HeadlessGridSurface()
    queue.enqueue(Profile(name="A"))
    queue.enqueue(Profile(name="B"))

    surface.mark_ready()
    assert asyncio.run(queue.flush_on_ready(surface)) is True

    assert applied == ["B"]
    assert queue.is_empty()
    assert queue.state == PendingState.EMPTY


def test_flush_waits_for_ready_surface():
    applied = []

    async def handler(entry, surface):
        applied.append(entry)

    queue = PendingApplicationQueue(handler)
    queue.enqueue(GridState())

    assert asyncio.run(queue.flush_on_ready(HeadlessGridSurface(ready=False))) is False
    assert applied == []
    assert queue.state == PendingState.QUEUED


def test_aborted_flush_keeps_entry_queued():
    surface = HeadlessGridSurface(ready=True)

    async def handler(entry, target):
        target.mark_unready()
        raise FlushAborted("surface went away")

    queue = PendingApplicationQueue(handler)
    queue.enqueue(Profile(name="A"))

    assert asyncio.run(queue.flush_on_ready(surface)) is False
    assert queue.state == PendingState.QUEUED
    assert queue.peek().profile.name == "A"


def test_failed_handler_keeps_entry_queued():
    async def handler(entry, surface):
        raise RuntimeError("boom")

    queue = PendingApplicationQueue(handler)
    queue.enqueue(Profile(name="A"))

    assert asyncio.run(queue.flush_on_ready(HeadlessGridSurface(ready=True))) is False
    assert not queue.is_empty()


def test_staged_column_state_is_taken_once():
    queue = PendingApplicationQueue()
    queue.stage_column_state([ColumnState(colId="price", hide=True)])

    staged = queue.take_column_state()

    assert staged.columnState[0].colId == "price"
    assert queue.take_column_state() is None
    assert not queue.has_staged_column_state


def test_discard_drops_everything():
    queue = PendingApplicationQueue()
    queue.enqueue(Profile(name="A"))
    queue.stage_column_state([])

    queue.discard()

    assert queue.is_empty()
    assert queue.state == PendingState.EMPTY
    assert queue.take_column_state() is None
