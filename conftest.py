# Shared fixtures: in-memory and SQLite-backed stores, services and the API client
import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from vandispatch import providers, settings
from vandispatch.adapters import InMemoryDispatchStore
from vandispatch.locks import AgentLocks
from vandispatch.repo import SqlDispatchStore, init_db
from vandispatch.service import DispatchService, OrderQuery
from vandispatch.tests.factories import AGENT_A, AGENT_B, GADGET, WIDGET


@pytest.fixture(autouse=True)
def use_memory_store(monkeypatch):
    monkeypatch.setattr(settings, "DISPATCH_STORE", "memory")
    monkeypatch.setattr(settings, "DISPATCH_LOCK_TIMEOUT", 0.5)
    providers.reset()
    yield
    providers.reset()


@pytest.fixture
def memory_store():
    store = InMemoryDispatchStore()
    store.add_agent(AGENT_A)
    store.add_agent(AGENT_B)
    return store


@pytest.fixture
def sql_engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def sql_store(sql_engine):
    store = SqlDispatchStore(sql_engine)
    store.add_agent(AGENT_A)
    store.add_agent(AGENT_B)
    store.upsert_product(WIDGET)
    store.upsert_product(GADGET)
    return store


@pytest.fixture(params=["memory", "sql"])
def store(request):
    """Run a test against both store implementations."""
    return request.getfixturevalue(f"{request.param}_store")


@pytest.fixture
def service(store):
    return DispatchService(store, AgentLocks(timeout=0.5))


@pytest.fixture
def query(store):
    return OrderQuery(store)
