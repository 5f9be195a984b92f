"""Dispatch error taxonomy.

Every error raised by the dispatch core is a ``DispatchError``. Like the
short error codes raised by the order service (``ValueError("INSUFFICIENT_STOCK")``),
``str(exc)`` is a stable upper-case code that callers and the HTTP layer can
map without inspecting the class. The ``retryable`` flag tells the caller
whether trying again (later, or with another agent) can succeed.
"""


class DispatchError(ValueError):
    """Base class for dispatch errors.

    Attributes:
        code: Short upper-case error code, also returned by ``str()``.
        retryable: True when the same call may succeed later.
    """

    code = "DISPATCH_ERROR"
    retryable = False

    def __init__(self, detail: str = ""):
        super().__init__(self.code)
        self.detail = detail

    def __str__(self) -> str:
        return self.code


class OrderNotFound(DispatchError):
    """The referenced order does not exist."""

    code = "ORDER_NOT_FOUND"

    def __init__(self, order_id: str):
        super().__init__(f"order {order_id} not found")
        self.order_id = order_id


class AgentNotFound(DispatchError):
    """The referenced agent does not exist."""

    code = "AGENT_NOT_FOUND"

    def __init__(self, agent_id: str):
        super().__init__(f"agent {agent_id} not found")
        self.agent_id = agent_id


class InvalidOrderState(DispatchError):
    """An illegal order status transition was requested."""

    code = "INVALID_ORDER_STATE"

    def __init__(self, current, target=None):
        super().__init__(f"cannot move order from {current} to {target}")
        self.current = current
        self.target = target


class InvalidOrderLine(DispatchError):
    """An order line has a non-positive quantity (upstream data error)."""

    code = "INVALID_ORDER_LINE"

    def __init__(self, line_id: str, quantity: int):
        super().__init__(f"line {line_id} has quantity {quantity}")
        self.line_id = line_id
        self.quantity = quantity


class InsufficientStock(DispatchError):
    """The agent cannot cover every line of the order.

    Attributes:
        shortfalls: Ordered shortfalls (product, needed, available). Empty
            when the shortage was detected by the ledger at commit time
            rather than by the evaluator.
    """

    code = "INSUFFICIENT_STOCK"
    retryable = True

    def __init__(self, shortfalls=()):
        super().__init__("agent stock does not cover the order")
        self.shortfalls = tuple(shortfalls)


class DispatchBusy(DispatchError):
    """The agent's inventory is locked by another dispatch; retry later."""

    code = "DISPATCH_BUSY"
    retryable = True

    def __init__(self, agent_id: str):
        super().__init__(f"agent {agent_id} is busy")
        self.agent_id = agent_id


class LedgerWriteError(DispatchError):
    """The ledger rejected an append because a balance would go negative."""

    code = "LEDGER_WRITE_REJECTED"

    def __init__(self, agent_id: str, product_id: str, balance: int):
        super().__init__(
            f"balance for agent {agent_id} product {product_id} would become {balance}"
        )
        self.agent_id = agent_id
        self.product_id = product_id
        self.balance = balance


class EmptyOrder(DispatchError):
    """The order has no lines and cannot be dispatched."""

    code = "EMPTY_ORDER"

    def __init__(self, order_id: str):
        super().__init__(f"order {order_id} has no lines")
        self.order_id = order_id
