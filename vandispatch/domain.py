"""Domain models, the order status state machine and the stock evaluator.

This module contains frozen dataclasses describing orders, agents and
stock movements, the pure functions that decide whether an order can be
dispatched from an agent's van, and protocol definitions (ports) for the
storage collaborator. It does no I/O.
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Tuple

from .errors import InvalidOrderLine, InvalidOrderState


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---- Enums ----
class OrderStatus(str, Enum):
    """Lifecycle of a customer order.

    ``PENDING`` is the initial state; ``COMPLETED`` (dispatched) and
    ``CANCELLED`` (refused) are terminal."""

    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class MovementKind(str, Enum):
    """Reason for a stock movement on an agent's van."""

    LOAD = "load"
    UNLOAD = "unload"
    SALE = "sale"
    ADJUSTMENT = "adjustment"


# ---- Entities / DTOs ----
@dataclass(frozen=True)
class Customer:
    id: str
    name: str
    email: str
    phone: Optional[str] = None


@dataclass(frozen=True)
class Product:
    id: str
    name: str
    sku: Optional[str] = None
    unit_price_cents: int = 0


@dataclass(frozen=True)
class Agent:
    """A field sales agent carrying van inventory."""

    id: str
    name: str
    email: Optional[str] = None


@dataclass(frozen=True)
class OrderLine:
    """A single line of an order.

    Attributes:
        id: Line identifier.
        product: The ordered product.
        quantity: Units requested. Must be positive; this is checked by
            ``evaluate_stock`` and reported as ``InvalidOrderLine``.
        unit_price_cents: Price per unit fixed when the order was placed.

    Raises:
        ValueError: If ``unit_price_cents`` is negative.
    """

    id: str
    product: Product
    quantity: int
    unit_price_cents: int

    def __post_init__(self):
        if self.unit_price_cents < 0:
            raise ValueError("NEGATIVE_UNIT_PRICE")

    @property
    def extended_cents(self) -> int:
        return self.quantity * self.unit_price_cents


@dataclass(frozen=True)
class Order:
    """Container for order data.

    Attributes:
        id: Order identifier.
        customer: The ordering customer (required).
        lines: Ordered line items.
        status: Current OrderStatus.
        total_cents: Total computed once when the order was placed. Dispatch
            never recomputes it.
        created_at: Creation timestamp, used to sort listings.
        order_date: Business date of the order.
    """

    id: str
    customer: Customer
    lines: Tuple[OrderLine, ...]
    status: OrderStatus = OrderStatus.PENDING
    total_cents: int = 0
    created_at: datetime = field(default_factory=utcnow)
    order_date: Optional[date] = None

    def __post_init__(self):
        # accept lists from callers while keeping the instance hashable
        object.__setattr__(self, "lines", tuple(self.lines))
        object.__setattr__(self, "status", OrderStatus(self.status))


@dataclass(frozen=True)
class StockMovement:
    """Immutable ledger entry for one change in an agent's van stock.

    ``quantity`` is signed: positive adds stock, negative removes it.
    """

    agent_id: str
    product_id: str
    quantity: int
    kind: MovementKind
    order_id: Optional[str] = None
    note: str = ""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class Shortfall:
    product_id: str
    product_name: str
    needed: int
    available: int


@dataclass(frozen=True)
class StockVerdict:
    """Result of checking an order against a balance snapshot."""

    fulfillable: bool
    shortfalls: Tuple[Shortfall, ...] = ()


@dataclass(frozen=True)
class DispatchResult:
    """The committed order and the movements written for it."""

    order: Order
    movements: Tuple[StockMovement, ...]


# ---- Order status state machine ----
ALLOWED_TRANSITIONS: Dict[OrderStatus, frozenset] = {
    OrderStatus.PENDING: frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED}),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return OrderStatus(target) in ALLOWED_TRANSITIONS[OrderStatus(current)]


def transition(order: Order, target: OrderStatus) -> Order:
    """Return a copy of ``order`` moved to ``target``.

    Only the topology is enforced here; whether the move is allowed by
    business rules (for example stock sufficiency) is decided by the caller.

    Raises:
        InvalidOrderState: If ``target`` is not reachable from the order's
            current status.
    """
    target = OrderStatus(target)
    if not can_transition(order.status, target):
        raise InvalidOrderState(order.status.value, target.value)
    return replace(order, status=target)


# ---- Stock availability evaluator ----
def evaluate_stock(order: Order, balances: Mapping[str, int]) -> StockVerdict:
    """Check every line of ``order`` against a balance snapshot.

    Args:
        order: Order whose lines are checked, in line order.
        balances: Mapping product id -> quantity the agent carries. Products
            missing from the mapping count as 0.

    Returns:
        StockVerdict: ``fulfillable`` is True iff no shortfall was found.
        Shortfalls are reported in the order's line sequence.

    Raises:
        InvalidOrderLine: If a line has a non-positive quantity.
    """
    shortfalls: List[Shortfall] = []
    for line in order.lines:
        if line.quantity <= 0:
            raise InvalidOrderLine(line.id, line.quantity)
        available = balances.get(line.product.id, 0)
        if available < line.quantity:
            shortfalls.append(
                Shortfall(
                    product_id=line.product.id,
                    product_name=line.product.name,
                    needed=line.quantity,
                    available=available,
                )
            )
    return StockVerdict(fulfillable=not shortfalls, shortfalls=tuple(shortfalls))


def sale_movements(order: Order, agent_id: str) -> List[StockMovement]:
    """Build one negative ``sale`` movement per order line."""
    note = f"Sale to customer: {order.customer.name}"
    return [
        StockMovement(
            agent_id=agent_id,
            product_id=line.product.id,
            quantity=-line.quantity,
            kind=MovementKind.SALE,
            order_id=order.id,
            note=note,
        )
        for line in order.lines
    ]


def net_deltas(movements: Iterable[StockMovement]) -> Dict[Tuple[str, str], int]:
    """Sum signed quantities per (agent, product) for a batch of movements."""
    out: Dict[Tuple[str, str], int] = {}
    for m in movements:
        key = (m.agent_id, m.product_id)
        out[key] = out.get(key, 0) + m.quantity
    return out


# ---- Ports (DIP) ----
class InventoryLedger(Protocol):
    """Port describing the van inventory ledger."""

    def get_balance(self, agent_id: str, product_id: str) -> int:
        raise NotImplementedError()

    def get_balances(self, agent_id: str) -> Dict[str, int]:
        raise NotImplementedError()

    def append(self, movements: List[StockMovement]) -> List[StockMovement]:
        """Append all movements or none.

        Raises:
            LedgerWriteError: If any resulting balance would be negative.
        """
        raise NotImplementedError()

    def movements(
        self, agent_id: Optional[str] = None, order_id: Optional[str] = None
    ) -> List[StockMovement]:
        raise NotImplementedError()


class DispatchStore(Protocol):
    """Port describing the storage collaborator used by dispatch.

    ``commit_dispatch`` and ``update_status`` are conditional on the order
    still having ``expected`` status, which makes them safe against
    concurrent writers outside this process.
    """

    ledger: InventoryLedger

    def get_order(self, order_id: str) -> Order:
        raise NotImplementedError()

    def list_orders(self) -> List[Order]:
        raise NotImplementedError()

    def get_agent(self, agent_id: str) -> Agent:
        raise NotImplementedError()

    def list_agents(self) -> List[Agent]:
        """Every agent that can fulfil orders, ordered by name."""
        raise NotImplementedError()

    def update_status(
        self, order_id: str, expected: OrderStatus, target: OrderStatus
    ) -> Order:
        raise NotImplementedError()

    def commit_dispatch(
        self, order_id: str, movements: List[StockMovement]
    ) -> Order:
        """Append ``movements`` and move the order pending -> completed as one unit.

        Raises:
            LedgerWriteError: A balance would go negative; nothing persisted.
            InvalidOrderState: The order is no longer pending; nothing persisted.
        """
        raise NotImplementedError()
