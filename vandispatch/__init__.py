"""Van dispatch core: dispatch orders from field agents' van inventory."""

from .domain import (
    Agent,
    Customer,
    DispatchResult,
    MovementKind,
    Order,
    OrderLine,
    OrderStatus,
    Product,
    Shortfall,
    StockMovement,
    StockVerdict,
    evaluate_stock,
    transition,
)
from .errors import (
    AgentNotFound,
    DispatchBusy,
    DispatchError,
    EmptyOrder,
    InsufficientStock,
    InvalidOrderLine,
    InvalidOrderState,
    LedgerWriteError,
    OrderNotFound,
)
from .locks import AgentLocks
from .service import DispatchService, OrderQuery

__version__ = "0.1.0"
