# Shared pytest fixtures
from __future__ import annotations
from contextlib import asynccontextmanager
from pathlib import Path
import pytest

from backend_database import Database
from backend_models import ColumnDef, ColumnGroupDefinition, ColumnGroupChild, ShowRule
from backend_surface import HeadlessGridSurface


class FakeClock:
    """Monotonic clock advanced by hand"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float):
        self.now += ms / 1000.0


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()

@pytest.fixture()
def database_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'gridsync.db'}"

@pytest.fixture()
def open_db(database_url: str):
    """Async context manager factory yielding an initialized store.

    The aiosqlite connection is bound to the running loop, so each test
    opens and closes it inside its own ``asyncio.run`` call.
    """
    @asynccontextmanager
    async def _open():
        db = Database(database_url)
        await db.init()
        try:
            yield db
        finally:
            await db.close()
    return _open

@pytest.fixture()
def base_columns() -> list[ColumnDef]:
    return [
        ColumnDef(field="id", headerName="ID", width=80),
        ColumnDef(field="symbol", headerName="Symbol", width=120),
        ColumnDef(field="price", headerName="Price", width=100, cellDataType="number"),
        ColumnDef(field="quantity", headerName="Quantity", width=100, cellDataType="number"),
        ColumnDef(field="side", headerName="Side", width=70),
        ColumnDef(field="notional", headerName="Notional", width=140, cellDataType="number"),
    ]

@pytest.fixture()
def surface(base_columns) -> HeadlessGridSurface:
    return HeadlessGridSurface(column_defs=base_columns, ready=True)

@pytest.fixture()
def pricing_group() -> ColumnGroupDefinition:
    return ColumnGroupDefinition(
        id="pricing",
        label="Pricing",
        openByDefault=True,
        children=[
            ColumnGroupChild(columnId="price"),
            ColumnGroupChild(columnId="quantity", showRule=ShowRule.ONLY_WHEN_OPEN),
            ColumnGroupChild(columnId="notional", showRule=ShowRule.ONLY_WHEN_CLOSED),
        ],
    )

def make_records(count: int, start: int = 0, price: float = 10.0) -> list[dict]:
    return [{"id": f"T{i}", "symbol": "ABC", "price": price, "quantity": i} for i in range(start, start + count)]

@pytest.fixture()
def records():
    return make_records
