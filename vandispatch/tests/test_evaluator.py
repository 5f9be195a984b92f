"""Tests for the stock availability evaluator."""

import pytest

from vandispatch.domain import Shortfall, evaluate_stock
from vandispatch.errors import InvalidOrderLine
from vandispatch.tests.factories import GADGET, WIDGET, make_order


def test_fulfillable_when_every_line_is_covered():
    order = make_order((WIDGET, 3), (GADGET, 1))
    verdict = evaluate_stock(order, {WIDGET.id: 3, GADGET.id: 10})
    assert verdict.fulfillable is True
    assert verdict.shortfalls == ()


def test_missing_product_counts_as_zero():
    order = make_order((GADGET, 2))
    verdict = evaluate_stock(order, {WIDGET.id: 50})
    assert verdict.fulfillable is False
    assert verdict.shortfalls == (Shortfall(GADGET.id, "Gadget", needed=2, available=0),)


def test_shortfalls_follow_line_order():
    order = make_order((GADGET, 5), (WIDGET, 1), (WIDGET, 9))
    verdict = evaluate_stock(order, {WIDGET.id: 4, GADGET.id: 1})
    assert [(s.product_name, s.needed, s.available) for s in verdict.shortfalls] == [
        ("Gadget", 5, 1),
        ("Widget", 9, 4),
    ]


def test_worked_example_shortfall():
    order = make_order((WIDGET, 4))
    verdict = evaluate_stock(order, {WIDGET.id: 2})
    assert verdict.fulfillable is False
    assert verdict.shortfalls == (Shortfall(WIDGET.id, "Widget", needed=4, available=2),)


@pytest.mark.parametrize("qty", [0, -1])
def test_non_positive_quantity_is_a_data_error(qty):
    order = make_order((WIDGET, 1), (GADGET, qty))
    with pytest.raises(InvalidOrderLine) as e:
        evaluate_stock(order, {WIDGET.id: 10, GADGET.id: 10})
    assert str(e.value) == "INVALID_ORDER_LINE"
    assert e.value.quantity == qty


def test_empty_order_is_vacuously_fulfillable():
    assert evaluate_stock(make_order(), {}).fulfillable is True


def test_evaluator_does_not_touch_snapshot():
    balances = {WIDGET.id: 5}
    evaluate_stock(make_order((WIDGET, 3)), balances)
    assert balances == {WIDGET.id: 5}
