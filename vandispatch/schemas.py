"""Pydantic schemas for the dispatch HTTP surface.

Request bodies are validated here before anything reaches the service;
response models are built from domain objects with ``from_domain``.
"""

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from .domain import Agent, MovementKind, Order, OrderStatus, StockMovement, StockVerdict

STATUS_FILTERS = {"all"} | {s.value for s in OrderStatus}


class DispatchIn(BaseModel):
    """Body of the dispatch endpoint.

    Attributes:
        agent_id: Agent whose van stock fulfils the order.
    """

    agent_id: str = Field(min_length=1, max_length=64)


class OrderListQuery(BaseModel):
    """Query parameters of the order listing.

    Attributes:
        status: ``all`` or an order status, case-insensitive. Defaults to
            ``pending``, the orders still waiting for a decision.
        q: Free-text term matched against order id, customer name and email.
    """

    status: str = OrderStatus.PENDING.value
    q: str = Field(default="", max_length=200)

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: str) -> str:
        """Normalize to lowercase and reject unknown filters.

        Raises:
            ValueError: When the value is not a known filter.
        """
        v2 = v.lower()
        if v2 not in STATUS_FILTERS:
            raise ValueError("Unsupported status filter")
        return v2


class ShortfallOut(BaseModel):
    product_id: str
    product_name: str
    needed: int
    available: int


class StockVerdictOut(BaseModel):
    fulfillable: bool
    shortfalls: list[ShortfallOut] = []

    @classmethod
    def from_domain(cls, verdict: StockVerdict) -> "StockVerdictOut":
        return cls(
            fulfillable=verdict.fulfillable,
            shortfalls=[ShortfallOut(**vars(s)) for s in verdict.shortfalls],
        )


class OrderLineOut(BaseModel):
    id: str
    product_id: str
    product_name: str
    quantity: int
    unit_price_cents: int


class OrderReadDTO(BaseModel):
    """Read model of an order as returned by the API."""

    id: str
    status: OrderStatus
    customer_name: str
    customer_email: str
    total_cents: int
    created_at: datetime
    order_date: Optional[date] = None
    lines: list[OrderLineOut] = []

    @classmethod
    def from_domain(cls, order: Order) -> "OrderReadDTO":
        return cls(
            id=order.id,
            status=order.status,
            customer_name=order.customer.name,
            customer_email=order.customer.email,
            total_cents=order.total_cents,
            created_at=order.created_at,
            order_date=order.order_date,
            lines=[
                OrderLineOut(
                    id=ln.id,
                    product_id=ln.product.id,
                    product_name=ln.product.name,
                    quantity=ln.quantity,
                    unit_price_cents=ln.unit_price_cents,
                )
                for ln in order.lines
            ],
        )


class MovementOut(BaseModel):
    id: str
    agent_id: str
    product_id: str
    quantity: int
    kind: str
    order_id: Optional[str] = None
    note: str = ""
    created_at: datetime

    @classmethod
    def from_domain(cls, m: StockMovement) -> "MovementOut":
        return cls(
            id=m.id,
            agent_id=m.agent_id,
            product_id=m.product_id,
            quantity=m.quantity,
            kind=MovementKind(m.kind).value,
            order_id=m.order_id,
            note=m.note,
            created_at=m.created_at,
        )


class DispatchOut(BaseModel):
    order: OrderReadDTO
    movements: list[MovementOut]


class AgentOut(BaseModel):
    id: str
    name: str
    email: Optional[str] = None

    @classmethod
    def from_domain(cls, agent: Agent) -> "AgentOut":
        return cls(id=agent.id, name=agent.name, email=agent.email)


class AgentStockOut(BaseModel):
    """Stock verdict of one agent for one order."""

    agent: AgentOut
    fulfillable: bool
    shortfalls: list[ShortfallOut] = []

    @classmethod
    def from_domain(cls, agent: Agent, verdict: StockVerdict) -> "AgentStockOut":
        out = StockVerdictOut.from_domain(verdict)
        return cls(agent=AgentOut.from_domain(agent), fulfillable=out.fulfillable, shortfalls=out.shortfalls)
