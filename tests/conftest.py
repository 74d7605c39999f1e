from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set

import pytest
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine

import catalog_sync.models  # noqa: F401
from catalog_sync.core.sync_config import SyncConfig
from catalog_sync.repositories.lock_repository import LockRepository
from catalog_sync.services.catalog_store import SqlCatalogStore
from catalog_sync.services.catalog_sync_service import CatalogSyncService
from catalog_sync.services.errors import MalformedResponseError
from catalog_sync.services.erp.catalog_api import ErpCatalogGateway
from catalog_sync.services.memory_guard import MemoryGuard
from catalog_sync.services.sync_lock import SyncLockManager
from catalog_sync.services.sync_metrics import SyncMetricsLedger


class FakeClock:
    """Управляемые часы для блокировок, маркеров и журнала."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2025, 3, 2, 10, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs):
        self.now += timedelta(seconds=seconds, **kwargs)


class FakeMonotonic:
    def __init__(self, start: float = 1000.0):
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float):
        self.value += seconds


class SleepRecorder:
    def __init__(self):
        self.calls: List[float] = []

    def __call__(self, seconds: float):
        self.calls.append(seconds)


class FakeErp(ErpCatalogGateway):
    """
    ERP в памяти: элементы с позициями 1..total.

    bad_positions: любой запрос, задевающий эти позиции, получает обрезанный ответ.
    fetch_errors: исключения, которые будут подняты следующими вызовами fetch_page.
    """

    def __init__(self, total: int = 120, bad_positions: Optional[Set[int]] = None):
        self.items: List[Dict[str, Any]] = [
            {"sku": f"SKU-{i:04d}", "name": f"Товар {i}", "price": i * 10} for i in range(1, total + 1)
        ]
        self.bad_positions: Set[int] = set(bad_positions or ())
        self.fetch_errors: List[Exception] = []
        self.count_errors: List[Exception] = []
        self.fetch_calls: List[tuple] = []
        self.pushed: List[Dict[str, Any]] = []

    def count(self, entity, filters=None):
        if self.count_errors:
            raise self.count_errors.pop(0)
        return len(self.items)

    def fetch_page(self, entity, start, end, filters=None):
        self.fetch_calls.append((start, end))
        if self.fetch_errors:
            raise self.fetch_errors.pop(0)
        if any(start <= position <= end for position in self.bad_positions):
            raise MalformedResponseError(f"Обрезанный ответ [{start}, {end}]", truncated=True)
        return [dict(item) for item in self.items[start - 1:end]]

    def push_item(self, entity, item):
        self.pushed.append(item)
        return {"status": "OK"}


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, class_=Session, expire_on_commit=False)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def monotonic():
    return FakeMonotonic()


@pytest.fixture
def sleeps():
    return SleepRecorder()


@pytest.fixture
def config():
    return SyncConfig(
        heartbeat_enabled=False,
        memory_limit_mb=None,
        lock_retry_delay_seconds=0.5,
        memory_pause_seconds=0.0,
        circuit_breaker_enabled=True,
        circuit_failure_threshold=3,
    )


@pytest.fixture
def ledger(session_factory, clock):
    return SyncMetricsLedger(session_factory, clock=clock)


@pytest.fixture
def lock_manager(session_factory, config, clock, sleeps):
    manager = SyncLockManager(LockRepository(session_factory), config=config, clock=clock, sleep=sleeps)
    yield manager
    manager.shutdown()


@pytest.fixture
def erp():
    return FakeErp(total=120)


@pytest.fixture
def memory_samples():
    """Последовательность значений RSS в МБ; последнее значение повторяется."""
    return [64.0]


@pytest.fixture
def memory_guard(config, memory_samples, monotonic):
    def sampler():
        if len(memory_samples) > 1:
            return memory_samples.pop(0)
        return memory_samples[0]
    return MemoryGuard(config, sampler=sampler, clock=monotonic)


@pytest.fixture
def make_service(session_factory, config, clock, sleeps, memory_guard, ledger):
    def factory(erp, lock_manager=None, **overrides):
        params = dict(
            erp=erp,
            store=SqlCatalogStore(session_factory),
            config=config,
            session_factory=session_factory,
            memory_guard=memory_guard,
            ledger=ledger,
            clock=clock,
            sleep=sleeps,
        )
        if lock_manager is not None:
            params["lock_manager"] = lock_manager
        params.update(overrides)
        return CatalogSyncService(**params)
    return factory


@pytest.fixture
def service(make_service, erp, lock_manager):
    return make_service(erp, lock_manager=lock_manager)
