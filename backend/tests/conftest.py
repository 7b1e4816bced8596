import asyncio
from types import MethodType
from typing import Any, Callable, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import text
from unittest.mock import AsyncMock

from fieldsync.config import Settings
from fieldsync.connectors.base import BaseSyncConnector, PullPage
from fieldsync.connectors.connectivity import ConnectivityMonitor
from fieldsync.context import SyncContext
from fieldsync.database import init_db, make_engine, make_session_factory
from fieldsync.main import create_app
from fieldsync.schemas.sync import SyncEntityConfig
from fieldsync.utils.timers import Scheduler

CLIENTS = SyncEntityConfig(
    name="clients",
    table_name="clients",
    api_endpoint="/sync/clients",
    api_mutation_endpoint="/sync/clients/mutations",
    batch_size=50,
    priority=10,
)
WORK_ORDERS = SyncEntityConfig(
    name="work_orders",
    table_name="work_orders",
    api_endpoint="/sync/work-orders",
    api_mutation_endpoint="/sync/work-orders/mutations",
    batch_size=50,
    priority=50,
)
TEST_ENTITIES = [CLIENTS, WORK_ORDERS]

ENTITY_TABLES = [
    "CREATE TABLE clients (id TEXT PRIMARY KEY, name TEXT, active INTEGER, notes TEXT, tags TEXT, synced_at TEXT)",
    "CREATE TABLE work_orders (id TEXT PRIMARY KEY, title TEXT, status TEXT, client_id TEXT, synced_at TEXT)",
]


def make_clients(count: int, start: int = 1) -> List[Dict[str, Any]]:
    return [
        {"id": str(i), "name": f"Client {i}", "active": i % 2 == 0, "notes": None, "tags": ["a", "b"]}
        for i in range(start, start + count)
    ]


class ManualTimer:
    def __init__(self, due_ms: float, seq: int, callback: Callable[[], None]):
        self.due_ms = due_ms
        self.seq = seq
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler(Scheduler):
    """Clock that only moves when a test advances it."""

    def __init__(self):
        self._now = 0.0
        self._seq = 0
        self._timers: List[ManualTimer] = []

    def now_ms(self) -> float:
        return self._now

    def call_later(self, delay_ms: float, callback: Callable[[], None]) -> ManualTimer:
        self._seq += 1
        timer = ManualTimer(self._now + max(delay_ms, 0), self._seq, callback)
        self._timers.append(timer)
        return timer

    @property
    def pending(self) -> int:
        return sum(1 for t in self._timers if not t.cancelled)

    async def settle(self) -> None:
        for _ in range(20):
            await asyncio.sleep(0)

    async def advance(self, ms: float) -> None:
        """Move the clock forward, firing due timers in order and letting spawned tasks run."""
        target = self._now + ms
        while True:
            due = [t for t in self._timers if not t.cancelled and t.due_ms <= target]
            if not due:
                break
            timer = min(due, key=lambda t: (t.due_ms, t.seq))
            self._timers.remove(timer)
            self._now = max(self._now, timer.due_ms)
            timer.callback()
            await self.settle()
        self._timers = [t for t in self._timers if not t.cancelled]
        self._now = target
        await self.settle()


class FakeConnector(BaseSyncConnector):
    """In-memory remote: pages over `remote[entity]` and applies every pushed mutation."""

    def __init__(self):
        super().__init__({})
        self.remote: Dict[str, List[Dict[str, Any]]] = {}
        self.pushed: List[Dict[str, Any]] = []
        self.fetch_page = AsyncMock(side_effect=MethodType(FakeConnector.fetch_page, self))
        self.fetch_record = AsyncMock(side_effect=MethodType(FakeConnector.fetch_record, self))
        self.push_mutations = AsyncMock(side_effect=MethodType(FakeConnector.push_mutations, self))
        self.validate_connection = AsyncMock(return_value=True)
        self.close = AsyncMock()

    async def fetch_page(
        self,
        entity: SyncEntityConfig,
        cursor: Optional[str] = None,
        since: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> PullPage:
        items = self.remote.get(entity.name, [])
        start = int(cursor or 0)
        size = limit or entity.batch_size
        more = start + size < len(items)
        return PullPage(
            items=items[start:start + size],
            has_more=more,
            total=len(items),
            next_cursor=str(start + size) if more else None,
        )

    async def fetch_record(self, entity: SyncEntityConfig, entity_id: str) -> Optional[Dict[str, Any]]:
        for item in self.remote.get(entity.name, []):
            if str(item.get("id")) == str(entity_id):
                return item
        return None

    async def push_mutations(self, entity: SyncEntityConfig, payload: Dict[str, Any]) -> Dict[str, Any]:
        self.pushed.extend(payload["mutations"])
        return {"results": [{"mutationId": m["mutationId"], "status": "applied"} for m in payload["mutations"]]}

    async def validate_connection(self) -> bool:
        return True


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        database_url="sqlite://",
        api_token="test-token",
        technician_id="tech-1",
        FAST_PUSH_DEBOUNCE_MS=100,
        FAST_PUSH_MAX_BUFFER_SIZE=20,
        FULL_SYNC_THROTTLE_MS=60_000,
        SYNC_RETRY_BASE_DELAY_MS=0,
        SYNC_TRIGGER_DEBOUNCE_MS=500,
        SYNC_TRIGGER_COOLDOWN_MS=5000,
        SLOW_CHUNK_THRESHOLD_MS=10_000,
    )


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def db_engine():
    engine = make_engine("sqlite://")
    init_db(engine)
    with engine.begin() as conn:
        for ddl in ENTITY_TABLES:
            conn.execute(text(ddl))
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return make_session_factory(db_engine)


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture
def connectivity() -> ConnectivityMonitor:
    return ConnectivityMonitor()


@pytest.fixture
def context(settings, db_engine, session_factory, connector, connectivity, scheduler) -> SyncContext:
    ctx = SyncContext(
        settings,
        db_engine,
        connector,
        connectivity,
        scheduler=scheduler,
        session_factory=session_factory,
    )
    ctx.register_entities(TEST_ENTITIES)
    return ctx


@pytest.fixture
def client(context) -> TestClient:
    app = create_app(context, start_jobs=False)
    with TestClient(app) as test_client:
        yield test_client
