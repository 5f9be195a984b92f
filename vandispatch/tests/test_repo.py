"""Tests specific to the SQLAlchemy store.

These use SQLite through the ``sql_store`` fixture and assert on the rows
behind the domain objects: the running balance table, the movement log and
the all-or-nothing behaviour of the dispatch transaction.
"""

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from vandispatch import repo
from vandispatch.domain import MovementKind, OrderStatus, StockMovement, sale_movements
from vandispatch.errors import DispatchBusy, InvalidOrderState, LedgerWriteError, OrderNotFound
from vandispatch.repo import OrderRow, StockMovementRow, VanInventoryRow, get_session
from vandispatch.tests.factories import AGENT_A, AGENT_B, GADGET, WIDGET, load, make_order


def test_order_round_trip_keeps_lines_in_order(sql_store):
    order = sql_store.add_order(make_order((GADGET, 2), (WIDGET, 1), total_cents=4321))
    got = sql_store.get_order(order.id)
    assert [ln.product.name for ln in got.lines] == ["Gadget", "Widget"]
    assert got.total_cents == 4321
    assert got.customer == order.customer
    assert got.created_at == order.created_at


def test_balance_row_tracks_ledger(sql_store, sql_engine):
    sql_store.ledger.append([load(AGENT_A, WIDGET, 4)])
    with get_session(sql_engine) as s:
        row = s.scalars(select(VanInventoryRow)).one()
        assert (row.agent_id, row.product_id, row.quantity) == (AGENT_A.id, WIDGET.id, 4)


def test_commit_dispatch_rolls_back_on_negative_balance(sql_store, sql_engine):
    sql_store.ledger.append([load(AGENT_A, WIDGET, 1)])
    order = sql_store.add_order(make_order((WIDGET, 1), (GADGET, 1)))

    with pytest.raises(LedgerWriteError):
        sql_store.commit_dispatch(order.id, sale_movements(order, AGENT_A.id))

    assert sql_store.get_order(order.id).status == OrderStatus.PENDING
    assert sql_store.ledger.get_balance(AGENT_A.id, WIDGET.id) == 1
    with get_session(sql_engine) as s:
        assert s.scalars(select(StockMovementRow).where(StockMovementRow.order_id == order.id)).all() == []


def test_commit_dispatch_requires_pending(sql_store):
    sql_store.ledger.append([load(AGENT_A, WIDGET, 5)])
    order = sql_store.add_order(make_order((WIDGET, 1), status=OrderStatus.CANCELLED))
    with pytest.raises(InvalidOrderState) as e:
        sql_store.commit_dispatch(order.id, sale_movements(order, AGENT_A.id))
    assert e.value.current == "cancelled"
    assert sql_store.ledger.get_balance(AGENT_A.id, WIDGET.id) == 5
    with pytest.raises(OrderNotFound):
        sql_store.commit_dispatch("missing", [])


def test_update_status_is_conditional(sql_store, sql_engine):
    order = sql_store.add_order(make_order((WIDGET, 1)))
    sql_store.update_status(order.id, OrderStatus.PENDING, OrderStatus.CANCELLED)
    with pytest.raises(InvalidOrderState):
        sql_store.update_status(order.id, OrderStatus.PENDING, OrderStatus.CANCELLED)
    with pytest.raises(InvalidOrderState):
        sql_store.update_status(order.id, OrderStatus.CANCELLED, OrderStatus.PENDING)
    with get_session(sql_engine) as s:
        assert s.get(OrderRow, order.id).status == "cancelled"


def test_database_contention_is_busy(sql_store, monkeypatch):
    sql_store.ledger.append([load(AGENT_A, WIDGET, 5)])
    order = sql_store.add_order(make_order((WIDGET, 1)))

    def locked(s, movements):
        raise OperationalError("SELECT ... FOR UPDATE", {}, Exception("lock timeout"))

    monkeypatch.setattr(repo, "_apply_movements", locked)
    with pytest.raises(DispatchBusy):
        sql_store.commit_dispatch(order.id, sale_movements(order, AGENT_A.id))
    assert sql_store.get_order(order.id).status == OrderStatus.PENDING


def test_list_orders_newest_first(sql_store):
    a = sql_store.add_order(make_order((WIDGET, 1)))
    b = sql_store.add_order(make_order((WIDGET, 1)))
    assert [o.id for o in sql_store.list_orders()] == [b.id, a.id]


def test_non_contention_database_error_propagates(sql_store, monkeypatch):
    sql_store.ledger.append([load(AGENT_A, WIDGET, 5)])
    order = sql_store.add_order(make_order((WIDGET, 1)))

    def broken(s, movements):
        raise OperationalError("INSERT INTO van_stock_movements", {}, Exception("no such table: van_stock_movements"))

    monkeypatch.setattr(repo, "_apply_movements", broken)
    with pytest.raises(OperationalError):
        sql_store.commit_dispatch(order.id, sale_movements(order, AGENT_A.id))
    assert sql_store.get_order(order.id).status == OrderStatus.PENDING


@pytest.mark.parametrize(
    "message, expected",
    [
        ("database is locked", True),
        ("canceling statement due to lock timeout", True),
        ("no such table: orders", False),
        ("server closed the connection unexpectedly", False),
    ],
)
def test_is_contention_by_message(message, expected):
    assert repo.is_contention(OperationalError("stmt", {}, Exception(message))) is expected


def test_is_contention_by_sqlstate():
    class DeadlockDetected(Exception):
        sqlstate = "40P01"

    assert repo.is_contention(OperationalError("stmt", {}, DeadlockDetected("deadlock detected")))


def test_first_balance_row_for_a_pair_is_created_once(sql_store, sql_engine):
    sql_store.ledger.append([load(AGENT_A, GADGET, 2)])
    sql_store.ledger.append([load(AGENT_A, GADGET, 3)])
    with get_session(sql_engine) as s:
        rows = s.scalars(select(VanInventoryRow).where(VanInventoryRow.product_id == GADGET.id)).all()
    assert [(r.agent_id, r.quantity) for r in rows] == [(AGENT_A.id, 5)]


def test_rejected_first_write_leaves_no_balance_row(sql_store, sql_engine):
    with pytest.raises(LedgerWriteError):
        sql_store.ledger.append([load(AGENT_A, GADGET, 1), StockMovement(AGENT_B.id, WIDGET.id, -1, MovementKind.UNLOAD)])
    with get_session(sql_engine) as s:
        assert s.scalars(select(VanInventoryRow)).all() == []
