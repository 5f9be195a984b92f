"""Service provider helpers for wiring DispatchService with its store.

``get_dispatch_service`` returns a service bound to the process-wide store
and lock registry. The store is selected by ``settings.DISPATCH_STORE``:
``sql`` uses ``SqlDispatchStore`` on ``settings.DATABASE_URL``, ``memory``
uses the in-process store, which suits tests and local development.
"""

from functools import lru_cache

from . import settings
from .adapters import InMemoryDispatchStore
from .domain import DispatchStore
from .locks import AgentLocks
from .repo import SqlDispatchStore, get_engine
from .service import DispatchService, OrderQuery


@lru_cache(maxsize=None)
def get_store() -> DispatchStore:
    """Return the process-wide DispatchStore."""
    if settings.DISPATCH_STORE == "memory":
        return InMemoryDispatchStore()
    if settings.DISPATCH_STORE == "sql":
        return SqlDispatchStore(get_engine(settings.DATABASE_URL), lock_timeout=settings.DISPATCH_LOCK_TIMEOUT)
    raise ValueError(f"unknown DISPATCH_STORE {settings.DISPATCH_STORE!r}")


@lru_cache(maxsize=None)
def get_agent_locks() -> AgentLocks:
    return AgentLocks(timeout=settings.DISPATCH_LOCK_TIMEOUT)


def get_dispatch_service() -> DispatchService:
    return DispatchService(store=get_store(), locks=get_agent_locks())


def get_order_query() -> OrderQuery:
    return OrderQuery(store=get_store())


def reset() -> None:
    """Drop cached store and locks so the next call re-reads settings."""
    get_store.cache_clear()
    get_agent_locks.cache_clear()
