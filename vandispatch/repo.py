"""SQLAlchemy repository for orders and van inventory.

This module provides database persistence for the dispatch core using
SQLAlchemy. The ``van_inventories`` table keeps a running balance per
(agent, product) with a ``CHECK (quantity >= 0)`` constraint, and
``van_stock_movements`` is the append-only ledger behind it.

Dispatch commits lock the affected balance rows with SELECT FOR UPDATE and
move the order out of ``pending`` with a conditional UPDATE in the same
transaction, so either the ledger append and the status change are both
persisted or neither is.
"""

import logging
import time
from contextlib import contextmanager
from datetime import timezone
from functools import lru_cache
from typing import Dict, List, Optional

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    text,
    update,
)
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import DeclarativeBase, Session, mapped_column, relationship

from . import settings
from .domain import (
    Agent,
    Customer,
    DispatchStore,
    InventoryLedger,
    MovementKind,
    Order,
    OrderLine,
    OrderStatus,
    Product,
    StockMovement,
    can_transition,
    net_deltas,
    utcnow,
)
from .errors import AgentNotFound, DispatchBusy, InvalidOrderState, LedgerWriteError, OrderNotFound

logger = logging.getLogger("vandispatch.repo")


class Base(DeclarativeBase): pass


class CustomerRow(Base):
    __tablename__ = "customers"
    id = mapped_column(String(64), primary_key=True)
    name = mapped_column(String(200), nullable=False)
    email = mapped_column(String(254), nullable=False)
    phone = mapped_column(String(40), nullable=True)


class ProductRow(Base):
    __tablename__ = "products"
    id = mapped_column(String(64), primary_key=True)
    name = mapped_column(String(200), nullable=False)
    sku = mapped_column(String(64), nullable=True)
    unit_price_cents = mapped_column(Integer, nullable=False, default=0)


class AgentRow(Base):
    __tablename__ = "agents"
    id = mapped_column(String(64), primary_key=True)
    name = mapped_column(String(200), nullable=False)
    email = mapped_column(String(254), nullable=True)


class OrderRow(Base):
    """SQLAlchemy model for an order header.

    Attributes:
        status: One of ``pending``, ``completed``, ``cancelled``.
        total_cents: Total fixed when the order was created.
    """
    __tablename__ = "orders"
    __table_args__ = (
        CheckConstraint("status IN ('pending', 'completed', 'cancelled')", name="ck_orders_status"),
    )
    id = mapped_column(String(64), primary_key=True)
    customer_id = mapped_column(ForeignKey("customers.id"), nullable=False)
    status = mapped_column(String(16), nullable=False, default=OrderStatus.PENDING.value)
    total_cents = mapped_column(Integer, nullable=False, default=0)
    created_at = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    order_date = mapped_column(Date, nullable=True)

    customer = relationship("CustomerRow")
    lines = relationship("OrderLineRow", order_by="OrderLineRow.position", cascade="all, delete-orphan")


class OrderLineRow(Base):
    __tablename__ = "order_lines"
    id = mapped_column(String(64), primary_key=True)
    order_id = mapped_column(ForeignKey("orders.id"), nullable=False, index=True)
    product_id = mapped_column(ForeignKey("products.id"), nullable=False)
    position = mapped_column(Integer, nullable=False, default=0)
    quantity = mapped_column(Integer, nullable=False)
    unit_price_cents = mapped_column(Integer, nullable=False)

    product = relationship("ProductRow")


class VanInventoryRow(Base):
    """Running balance of one product carried by one agent."""
    __tablename__ = "van_inventories"
    __table_args__ = (
        UniqueConstraint("agent_id", "product_id", name="uq_van_inventories_agent_product"),
        CheckConstraint("quantity >= 0", name="ck_van_inventories_quantity"),
    )
    id = mapped_column(Integer, primary_key=True, autoincrement=True)
    agent_id = mapped_column(ForeignKey("agents.id"), nullable=False, index=True)
    product_id = mapped_column(ForeignKey("products.id"), nullable=False)
    quantity = mapped_column(Integer, nullable=False, default=0)
    last_updated_at = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class StockMovementRow(Base):
    __tablename__ = "van_stock_movements"
    __table_args__ = (
        CheckConstraint(
            "kind IN ('load', 'unload', 'sale', 'adjustment')", name="ck_van_stock_movements_kind"
        ),
    )
    # seq gives a stable newest-first order for movements written in the same instant
    seq = mapped_column(Integer, primary_key=True, autoincrement=True)
    id = mapped_column(String(36), unique=True, nullable=False)
    agent_id = mapped_column(ForeignKey("agents.id"), nullable=False, index=True)
    product_id = mapped_column(ForeignKey("products.id"), nullable=False)
    kind = mapped_column(String(16), nullable=False)
    quantity = mapped_column(Integer, nullable=False)
    order_id = mapped_column(ForeignKey("orders.id"), nullable=True, index=True)
    note = mapped_column(Text, nullable=False, default="")
    created_at = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


@lru_cache(maxsize=None)
def get_engine(url: Optional[str] = None) -> Engine:
    """Return a process-wide engine for ``url`` (defaults to settings.DATABASE_URL)."""
    return create_engine(url or settings.DATABASE_URL, pool_pre_ping=True)


def init_db(engine: Engine) -> None:
    Base.metadata.create_all(engine)


def wait_for_db(engine: Engine, timeout: float) -> None:
    """Block until the database accepts connections or ``timeout`` elapses.

    Raises:
        OperationalError: The last connection error once the deadline passed.
    """
    deadline = time.time() + timeout
    while True:
        try:
            with engine.connect() as conn:
                conn.execute(text("select 1"))
            return
        except OperationalError:
            if time.time() > deadline:
                raise
            logger.info("database not ready, retrying")
            time.sleep(1)


@contextmanager
def get_session(engine: Engine):
    """Context manager that yields a SQLAlchemy session.

    The session is closed (and any uncommitted work rolled back) when
    exiting the context.

    Yields:
        Session: Active SQLAlchemy session bound to ``engine``.
    """
    with Session(engine) as s:
        yield s


def _aware(dt):
    # SQLite drops tzinfo on the way back
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def _to_product(row: ProductRow) -> Product:
    return Product(id=row.id, name=row.name, sku=row.sku, unit_price_cents=row.unit_price_cents)


def _to_order(row: OrderRow) -> Order:
    if row.customer is None:
        raise LookupError(f"order {row.id} references a missing customer")
    lines = []
    for ln in row.lines:
        if ln.product is None:
            raise LookupError(f"order line {ln.id} references a missing product")
        lines.append(
            OrderLine(
                id=ln.id,
                product=_to_product(ln.product),
                quantity=ln.quantity,
                unit_price_cents=ln.unit_price_cents,
            )
        )
    c = row.customer
    return Order(
        id=row.id,
        customer=Customer(id=c.id, name=c.name, email=c.email, phone=c.phone),
        lines=tuple(lines),
        status=OrderStatus(row.status),
        total_cents=row.total_cents,
        created_at=_aware(row.created_at),
        order_date=row.order_date,
    )


def _to_movement(row: StockMovementRow) -> StockMovement:
    return StockMovement(
        id=row.id,
        agent_id=row.agent_id,
        product_id=row.product_id,
        quantity=row.quantity,
        kind=MovementKind(row.kind),
        order_id=row.order_id,
        note=row.note,
        created_at=_aware(row.created_at),
    )


_UPSERT_INSERTS = {"postgresql": pg_insert, "sqlite": sqlite_insert}

# lock_not_available, deadlock_detected, serialization_failure
CONTENTION_SQLSTATES = frozenset({"55P03", "40P01", "40001"})


def is_contention(exc: OperationalError) -> bool:
    """True when the error means another transaction held what we needed."""
    orig = exc.orig
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if code in CONTENTION_SQLSTATES:
        return True
    message = str(orig).lower()
    return "database is locked" in message or "lock timeout" in message


def _apply_movements(s: Session, movements: List[StockMovement]) -> None:
    """Lock the affected balances, check them and write the movements.

    Rows are locked in sorted key order so two transactions touching the
    same products cannot deadlock each other.

    Raises:
        LedgerWriteError: If a resulting balance would be negative. Nothing
            has been flushed for the offending pair; the caller rolls back.
    """
    insert = _UPSERT_INSERTS.get(s.get_bind().dialect.name)
    for (agent_id, product_id), delta in sorted(net_deltas(movements).items()):
        if insert is not None:
            # two first writes for one pair meet on the unique key instead of failing
            s.execute(
                insert(VanInventoryRow)
                .values(agent_id=agent_id, product_id=product_id, quantity=0, last_updated_at=utcnow())
                .on_conflict_do_nothing(index_elements=["agent_id", "product_id"])
            )
        row = (
            s.query(VanInventoryRow)
            .filter(VanInventoryRow.agent_id == agent_id, VanInventoryRow.product_id == product_id)
            .with_for_update()
            .one_or_none()
        )
        balance = (row.quantity if row else 0) + delta
        if balance < 0:
            raise LedgerWriteError(agent_id, product_id, balance)
        if row is None:
            row = VanInventoryRow(agent_id=agent_id, product_id=product_id, quantity=0)
            s.add(row)
        row.quantity = balance
        row.last_updated_at = utcnow()

    for m in movements:
        s.add(
            StockMovementRow(
                id=m.id,
                agent_id=m.agent_id,
                product_id=m.product_id,
                kind=MovementKind(m.kind).value,
                quantity=m.quantity,
                order_id=m.order_id,
                note=m.note,
                created_at=m.created_at,
            )
        )
    s.flush()


class SqlInventoryLedger(InventoryLedger):
    """Ledger backed by ``van_inventories`` and ``van_stock_movements``."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def get_balance(self, agent_id: str, product_id: str) -> int:
        with get_session(self.engine) as s:
            row = (
                s.query(VanInventoryRow)
                .filter(VanInventoryRow.agent_id == agent_id, VanInventoryRow.product_id == product_id)
                .one_or_none()
            )
            return row.quantity if row else 0

    def get_balances(self, agent_id: str) -> Dict[str, int]:
        with get_session(self.engine) as s:
            rows = s.query(VanInventoryRow).filter(VanInventoryRow.agent_id == agent_id).all()
            return {r.product_id: r.quantity for r in rows}

    def append(self, movements: List[StockMovement]) -> List[StockMovement]:
        """Atomically append movements and update balances.

        Either every movement is written or none is.

        Raises:
            LedgerWriteError: If any resulting balance would be negative.
        """
        movements = list(movements)
        with get_session(self.engine) as s:
            try:
                _apply_movements(s, movements)
                s.commit()
            except LedgerWriteError:
                s.rollback()
                raise
        return movements

    def movements(self, agent_id: Optional[str] = None, order_id: Optional[str] = None) -> List[StockMovement]:
        with get_session(self.engine) as s:
            q = s.query(StockMovementRow)
            if agent_id is not None:
                q = q.filter(StockMovementRow.agent_id == agent_id)
            if order_id is not None:
                q = q.filter(StockMovementRow.order_id == order_id)
            return [_to_movement(r) for r in q.order_by(StockMovementRow.seq.desc()).all()]


class SqlDispatchStore(DispatchStore):
    """Repository class implementing ``DispatchStore`` with SQLAlchemy.

    Args:
        engine: Engine to run against.
        lock_timeout: Seconds a dispatch transaction waits for row locks
            before the database aborts it (PostgreSQL only). Lock contention
            surfaces as ``DispatchBusy``; other database errors propagate.
    """

    def __init__(self, engine: Engine, lock_timeout: Optional[float] = None):
        self.engine = engine
        self.lock_timeout = lock_timeout
        self.ledger = SqlInventoryLedger(engine)

    # ---- writes used to load reference data ----
    def add_agent(self, agent: Agent) -> Agent:
        with get_session(self.engine) as s:
            s.merge(AgentRow(id=agent.id, name=agent.name, email=agent.email))
            s.commit()
        return agent

    def add_order(self, order: Order) -> Order:
        """Persist an order with its customer, products and lines."""
        with get_session(self.engine) as s:
            c = order.customer
            s.merge(CustomerRow(id=c.id, name=c.name, email=c.email, phone=c.phone))
            for ln in order.lines:
                p = ln.product
                s.merge(ProductRow(id=p.id, name=p.name, sku=p.sku, unit_price_cents=p.unit_price_cents))
            s.merge(
                OrderRow(
                    id=order.id,
                    customer_id=c.id,
                    status=order.status.value,
                    total_cents=order.total_cents,
                    created_at=order.created_at,
                    order_date=order.order_date,
                    lines=[
                        OrderLineRow(
                            id=ln.id,
                            order_id=order.id,
                            product_id=ln.product.id,
                            position=i,
                            quantity=ln.quantity,
                            unit_price_cents=ln.unit_price_cents,
                        )
                        for i, ln in enumerate(order.lines)
                    ],
                )
            )
            s.commit()
        return order

    def upsert_product(self, product: Product) -> Product:
        with get_session(self.engine) as s:
            s.merge(ProductRow(id=product.id, name=product.name, sku=product.sku,
                               unit_price_cents=product.unit_price_cents))
            s.commit()
        return product

    # ---- DispatchStore ----
    def get_order(self, order_id: str) -> Order:
        with get_session(self.engine) as s:
            row = s.get(OrderRow, order_id)
            if row is None:
                raise OrderNotFound(order_id)
            return _to_order(row)

    def list_orders(self) -> List[Order]:
        with get_session(self.engine) as s:
            rows = s.query(OrderRow).order_by(OrderRow.created_at.desc()).all()
            return [_to_order(r) for r in rows]

    def get_agent(self, agent_id: str) -> Agent:
        with get_session(self.engine) as s:
            row = s.get(AgentRow, agent_id)
            if row is None:
                raise AgentNotFound(agent_id)
            return Agent(id=row.id, name=row.name, email=row.email)

    def list_agents(self) -> List[Agent]:
        with get_session(self.engine) as s:
            rows = s.query(AgentRow).order_by(AgentRow.name, AgentRow.id).all()
            return [Agent(id=r.id, name=r.name, email=r.email) for r in rows]

    def _move_status(self, s: Session, order_id: str, expected: OrderStatus, target: OrderStatus) -> None:
        # single-row conditional update; rowcount 0 means missing or already moved
        res = s.execute(
            update(OrderRow)
            .where(OrderRow.id == order_id, OrderRow.status == expected.value)
            .values(status=target.value)
        )
        if res.rowcount != 1:
            current = s.get(OrderRow, order_id)
            if current is None:
                raise OrderNotFound(order_id)
            raise InvalidOrderState(current.status, target.value)

    def update_status(self, order_id: str, expected: OrderStatus, target: OrderStatus) -> Order:
        expected, target = OrderStatus(expected), OrderStatus(target)
        if not can_transition(expected, target):
            raise InvalidOrderState(expected.value, target.value)
        with get_session(self.engine) as s:
            self._move_status(s, order_id, expected, target)
            s.commit()
        return self.get_order(order_id)

    def commit_dispatch(self, order_id: str, movements: List[StockMovement]) -> Order:
        """Append sale movements and complete the order in one transaction.

        Raises:
            LedgerWriteError: A balance would go negative.
            InvalidOrderState: The order left ``pending`` concurrently.
            OrderNotFound: The order disappeared.
            DispatchBusy: Lock timeout, deadlock or a locked database.
            OperationalError: Any other database failure, unchanged.
        """
        movements = list(movements)
        agent_id = movements[0].agent_id if movements else "-"
        with get_session(self.engine) as s:
            try:
                if self.lock_timeout and self.engine.dialect.name == "postgresql":
                    s.execute(text(f"SET LOCAL lock_timeout = {int(self.lock_timeout * 1000)}"))
                self._move_status(s, order_id, OrderStatus.PENDING, OrderStatus.COMPLETED)
                _apply_movements(s, movements)
                s.commit()
            except OperationalError as exc:
                s.rollback()
                if not is_contention(exc):
                    raise
                logger.warning("dispatch transaction aborted", extra={"order_id": order_id, "error": str(exc.orig)})
                raise DispatchBusy(agent_id) from exc
            except Exception:
                s.rollback()
                raise
        return self.get_order(order_id)
