"""In-process adapters for the dispatch storage ports.

These adapters implement ``InventoryLedger`` and ``DispatchStore`` in
memory without any database. They are intended for unit tests and local
development where deterministic behavior is useful. A single re-entrant
lock guards orders and the ledger together, so ``commit_dispatch`` applies
the ledger append and the status change as one unit.
"""

import threading
from typing import Dict, List, Optional, Tuple

from .domain import (
    Agent,
    DispatchStore,
    InventoryLedger,
    Order,
    OrderStatus,
    StockMovement,
    net_deltas,
    transition,
)
from .errors import AgentNotFound, InvalidOrderState, LedgerWriteError, OrderNotFound


class InMemoryLedger(InventoryLedger):
    """Ledger keeping a running balance per (agent, product) next to the movement log."""

    def __init__(self, lock: Optional[threading.RLock] = None):
        self._lock = lock or threading.RLock()
        self._balances: Dict[Tuple[str, str], int] = {}
        self._movements: List[StockMovement] = []

    def get_balance(self, agent_id: str, product_id: str) -> int:
        with self._lock:
            return self._balances.get((agent_id, product_id), 0)

    def get_balances(self, agent_id: str) -> Dict[str, int]:
        with self._lock:
            return {p: q for (a, p), q in self._balances.items() if a == agent_id}

    def append(self, movements: List[StockMovement]) -> List[StockMovement]:
        movements = list(movements)
        with self._lock:
            updates = self._check(movements)
            self._apply(movements, updates)
        return movements

    def movements(self, agent_id: Optional[str] = None, order_id: Optional[str] = None) -> List[StockMovement]:
        with self._lock:
            out = [
                m for m in self._movements
                if (agent_id is None or m.agent_id == agent_id)
                and (order_id is None or m.order_id == order_id)
            ]
        # newest first
        out.reverse()
        return out

    def _check(self, movements: List[StockMovement]) -> Dict[Tuple[str, str], int]:
        # caller holds the lock
        updates = {}
        for (agent_id, product_id), delta in net_deltas(movements).items():
            balance = self._balances.get((agent_id, product_id), 0) + delta
            if balance < 0:
                raise LedgerWriteError(agent_id, product_id, balance)
            updates[(agent_id, product_id)] = balance
        return updates

    def _apply(self, movements: List[StockMovement], updates: Dict[Tuple[str, str], int]) -> None:
        self._balances.update(updates)
        self._movements.extend(movements)


class InMemoryDispatchStore(DispatchStore):
    """Dict-backed implementation of ``DispatchStore``."""

    def __init__(self):
        self._lock = threading.RLock()
        self.ledger = InMemoryLedger(self._lock)
        self._orders: Dict[str, Order] = {}
        self._agents: Dict[str, Agent] = {}

    def add_agent(self, agent: Agent) -> Agent:
        with self._lock:
            self._agents[agent.id] = agent
        return agent

    def add_order(self, order: Order) -> Order:
        with self._lock:
            self._orders[order.id] = order
        return order

    def get_order(self, order_id: str) -> Order:
        with self._lock:
            try:
                return self._orders[order_id]
            except KeyError:
                raise OrderNotFound(order_id) from None

    def list_orders(self) -> List[Order]:
        with self._lock:
            return list(self._orders.values())

    def get_agent(self, agent_id: str) -> Agent:
        with self._lock:
            try:
                return self._agents[agent_id]
            except KeyError:
                raise AgentNotFound(agent_id) from None

    def list_agents(self) -> List[Agent]:
        with self._lock:
            return sorted(self._agents.values(), key=lambda a: (a.name, a.id))

    def update_status(self, order_id: str, expected: OrderStatus, target: OrderStatus) -> Order:
        with self._lock:
            order = self.get_order(order_id)
            if order.status != expected:
                raise InvalidOrderState(order.status.value, OrderStatus(target).value)
            updated = transition(order, target)
            self._orders[order_id] = updated
            return updated

    def commit_dispatch(self, order_id: str, movements: List[StockMovement]) -> Order:
        movements = list(movements)
        with self._lock:
            order = self.get_order(order_id)
            if order.status != OrderStatus.PENDING:
                raise InvalidOrderState(order.status.value, OrderStatus.COMPLETED.value)
            completed = transition(order, OrderStatus.COMPLETED)
            updates = self.ledger._check(movements)
            # nothing is mutated before this point
            self.ledger._apply(movements, updates)
            self._orders[order_id] = completed
            return completed
