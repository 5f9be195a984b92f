"""Dispatch transaction manager and read-side query layer.

``DispatchService`` is the only path that completes an order and deducts
van stock. It runs the availability check and the commit inside the
agent's critical section, re-reading balances there instead of trusting a
snapshot taken by the caller. ``OrderQuery`` serves listings and a
best-effort stock status for display; it never mutates anything.
"""

import logging
from typing import Dict, List, Optional, Tuple, Union

from .domain import (
    Agent,
    DispatchResult,
    DispatchStore,
    Order,
    OrderStatus,
    Shortfall,
    StockMovement,
    StockVerdict,
    evaluate_stock,
    sale_movements,
    transition,
)
from .errors import EmptyOrder, InsufficientStock, LedgerWriteError
from .locks import AgentLocks

logger = logging.getLogger("vandispatch.service")

STATUS_FILTER_ALL = "all"


class DispatchService:
    """Domain service responsible for dispatching and refusing orders.

    Args:
        store: Storage collaborator providing orders, agents and the ledger.
        locks: Per-agent lock registry shared by every service instance
            that dispatches against the same store.
    """

    def __init__(self, store: DispatchStore, locks: AgentLocks):
        self.store = store
        self.locks = locks

    def confirm_dispatch(self, order_id: str, agent_id: str) -> DispatchResult:
        """Dispatch a pending order from an agent's van.

        Steps: validate order and agent, take the agent's lock, re-read the
        order and the agent's balances, evaluate, then commit the sale
        movements together with the ``pending -> completed`` transition.

        Args:
            order_id: Order to dispatch.
            agent_id: Agent whose van stock fulfils the order.

        Returns:
            DispatchResult: The completed order and the movements written.

        Raises:
            OrderNotFound: Unknown order.
            AgentNotFound: Unknown agent.
            InvalidOrderState: The order is not pending.
            EmptyOrder: The order has no lines.
            InvalidOrderLine: A line has a non-positive quantity.
            InsufficientStock: The agent cannot cover every line.
            DispatchBusy: The agent's lock could not be acquired in time.
        """
        order = self.store.get_order(order_id)
        transition(order, OrderStatus.COMPLETED)
        self.store.get_agent(agent_id)
        if not order.lines:
            raise EmptyOrder(order_id)

        with self.locks.hold(agent_id):
            order = self.store.get_order(order_id)
            transition(order, OrderStatus.COMPLETED)
            verdict = evaluate_stock(order, self.store.ledger.get_balances(agent_id))
            if not verdict.fulfillable:
                logger.warning(
                    "dispatch rejected",
                    extra={"order_id": order_id, "agent_id": agent_id, "code": InsufficientStock.code,
                           "shortfalls": len(verdict.shortfalls)},
                )
                raise InsufficientStock(verdict.shortfalls)

            movements = sale_movements(order, agent_id)
            try:
                completed = self.store.commit_dispatch(order_id, movements)
            except LedgerWriteError as exc:
                # balances changed between the check and the commit
                logger.warning(
                    "ledger rejected dispatch",
                    extra={"order_id": order_id, "agent_id": agent_id, "product_id": exc.product_id},
                )
                raise InsufficientStock(self._shortfalls_after_rejection(order, agent_id, exc)) from exc

        logger.info(
            "dispatch committed",
            extra={"order_id": order_id, "agent_id": agent_id, "movements": len(movements)},
        )
        return DispatchResult(order=completed, movements=tuple(movements))

    def _shortfalls_after_rejection(self, order: Order, agent_id: str, exc: LedgerWriteError) -> Tuple[Shortfall, ...]:
        verdict = evaluate_stock(order, self.store.ledger.get_balances(agent_id))
        if verdict.shortfalls:
            return verdict.shortfalls
        # every line fits on its own; the netted total for one product does not
        lines = [ln for ln in order.lines if ln.product.id == exc.product_id]
        needed = sum(ln.quantity for ln in lines)
        name = lines[0].product.name if lines else exc.product_id
        return (Shortfall(exc.product_id, name, needed, needed + exc.balance),)

    def refuse_order(self, order_id: str) -> Order:
        """Cancel a pending order. No ledger effect.

        Raises:
            OrderNotFound: Unknown order.
            InvalidOrderState: The order is not pending.
        """
        order = self.store.get_order(order_id)
        transition(order, OrderStatus.CANCELLED)
        refused = self.store.update_status(order_id, OrderStatus.PENDING, OrderStatus.CANCELLED)
        logger.info("order refused", extra={"order_id": order_id})
        return refused

    def evaluate_stock(self, order: Union[Order, str], agent_id: str) -> StockVerdict:
        """Evaluate an order (or order id) against the agent's current balances."""
        if isinstance(order, str):
            order = self.store.get_order(order)
        self.store.get_agent(agent_id)
        return evaluate_stock(order, self.store.ledger.get_balances(agent_id))

    def balances(self, agent_id: str) -> Dict[str, int]:
        self.store.get_agent(agent_id)
        return self.store.ledger.get_balances(agent_id)

    def movement_history(self, agent_id: str, order_id: Optional[str] = None) -> List[StockMovement]:
        """Audit trail of an agent's van stock, newest first."""
        self.store.get_agent(agent_id)
        return self.store.ledger.movements(agent_id=agent_id, order_id=order_id)


def parse_status_filter(value: Optional[str]) -> Optional[OrderStatus]:
    """Map a status filter to an OrderStatus, or None for ``all``.

    Raises:
        ValueError: If the value is neither ``all`` nor a known status.
    """
    if not value or value.lower() == STATUS_FILTER_ALL:
        return None
    return OrderStatus(value.lower())


def matches_search(order: Order, term: str) -> bool:
    if not term:
        return True
    term = term.lower()
    return (
        term in order.id.lower()
        or term in order.customer.name.lower()
        or term in order.customer.email.lower()
    )


class OrderQuery:
    """Read-side listing of orders for review screens."""

    def __init__(self, store: DispatchStore):
        self.store = store

    def list_orders(self, status_filter: Optional[str] = STATUS_FILTER_ALL, search_term: Optional[str] = "") -> List[Order]:
        """List orders by status and free-text match, newest first.

        Args:
            status_filter: ``all`` or one of the order statuses.
            search_term: Case-insensitive substring matched against the
                order id, customer name and customer email. Empty matches
                everything.

        Returns:
            list[Order]: Matching orders sorted by ``created_at`` descending.
        """
        status = parse_status_filter(status_filter)
        out = [
            o for o in self.store.list_orders()
            if (status is None or o.status == status) and matches_search(o, search_term or "")
        ]
        out.sort(key=lambda o: o.created_at, reverse=True)
        return out

    def stock_status_for(self, order: Order, agent_id: str) -> StockVerdict:
        """Best-effort verdict for one agent.

        Display only; ``confirm_dispatch`` re-checks under the agent lock.

        Raises:
            AgentNotFound: Unknown agent.
        """
        self.store.get_agent(agent_id)
        return evaluate_stock(order, self.store.ledger.get_balances(agent_id))

    def stock_status_by_agent(self, order: Order) -> List[Tuple[Agent, StockVerdict]]:
        """Verdict for every agent, in the order of ``list_agents``.

        Lets a reviewer pick an agent whose van can fulfil the order.
        """
        return [
            (agent, evaluate_stock(order, self.store.ledger.get_balances(agent.id)))
            for agent in self.store.list_agents()
        ]
