"""Dispatch service API built with FastAPI.

This module exposes the dispatch core over HTTP: listing orders for review,
checking an agent's stock against an order, dispatching and refusing
orders, and reading an agent's balances and movement history. Validation
is performed with Pydantic models; all decisions are delegated to
``DispatchService`` and ``OrderQuery``. Dispatch errors map to HTTP status
codes in one exception handler.
"""

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from . import settings
from .domain import DispatchStore
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
from .logging_filters import configure_logging
from .middleware import add_request_id
from .providers import get_dispatch_service, get_order_query, get_store
from .repo import SqlDispatchStore, init_db, wait_for_db
from .schemas import (
    AgentOut,
    AgentStockOut,
    DispatchIn,
    DispatchOut,
    MovementOut,
    OrderListQuery,
    OrderReadDTO,
    StockVerdictOut,
)
from .service import DispatchService, OrderQuery

app = FastAPI(title="Van Dispatch Service")
app.middleware("http")(add_request_id)

logger = configure_logging(settings.LOG_LEVEL)

ERROR_STATUS = {
    OrderNotFound: 404,
    AgentNotFound: 404,
    InvalidOrderState: 409,
    InvalidOrderLine: 422,
    EmptyOrder: 422,
    InsufficientStock: 422,
    LedgerWriteError: 422,
    DispatchBusy: 503,
}


@app.on_event("startup")
def _startup_db():
    store = get_store()
    if isinstance(store, SqlDispatchStore):
        wait_for_db(store.engine, settings.DB_STARTUP_TIMEOUT)
        init_db(store.engine)


@app.exception_handler(DispatchError)
async def dispatch_error_handler(request: Request, exc: DispatchError):
    """Translate a DispatchError into a JSON response.

    The body always carries ``detail`` (the error code) and ``retryable``;
    insufficient stock adds the shortfalls, busy adds a ``Retry-After``.
    """
    status_code = ERROR_STATUS.get(type(exc), 400)
    body = {"detail": exc.code, "retryable": exc.retryable}
    headers = None
    if isinstance(exc, InsufficientStock):
        body["shortfalls"] = [
            {"product_id": s.product_id, "product_name": s.product_name,
             "needed": s.needed, "available": s.available}
            for s in exc.shortfalls
        ]
    if isinstance(exc, DispatchBusy):
        headers = {"Retry-After": "1"}
    return JSONResponse(body, status_code=status_code, headers=headers)


@app.get("/health")
def health():
    """Liveness/health probe endpoint."""
    return {"ok": True}


@app.get("/orders", response_model=list[OrderReadDTO])
def list_orders(status: str = "pending", q: str = "", query: OrderQuery = Depends(get_order_query)):
    """List orders filtered by status and free text, newest first.

    Without a ``status`` only pending orders are listed; pass ``all`` for
    every order.

    Raises:
        HTTPException: With status 400 when the filter is not valid.
    """
    try:
        params = OrderListQuery(status=status, q=q)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return [OrderReadDTO.from_domain(o) for o in query.list_orders(params.status, params.q)]


@app.get("/orders/{order_id}", response_model=OrderReadDTO)
def retrieve_order(order_id: str, store: DispatchStore = Depends(get_store)):
    return OrderReadDTO.from_domain(store.get_order(order_id))


@app.get("/orders/{order_id}/stock", response_model=list[AgentStockOut])
def stock_matrix(order_id: str, store: DispatchStore = Depends(get_store), query: OrderQuery = Depends(get_order_query)):
    """Stock verdict of every agent for one order."""
    order = store.get_order(order_id)
    return [AgentStockOut.from_domain(agent, verdict) for agent, verdict in query.stock_status_by_agent(order)]


@app.get("/orders/{order_id}/stock/{agent_id}", response_model=StockVerdictOut)
def stock_status(order_id: str, agent_id: str, service: DispatchService = Depends(get_dispatch_service)):
    """Best-effort stock check for display; dispatch re-checks under lock."""
    return StockVerdictOut.from_domain(service.evaluate_stock(order_id, agent_id))


@app.post("/orders/{order_id}/dispatch", response_model=DispatchOut)
def dispatch(order_id: str, req: DispatchIn, service: DispatchService = Depends(get_dispatch_service)):
    """Dispatch a pending order from the agent's van.

    Returns:
        DispatchOut: The completed order and the sale movements written.
    """
    result = service.confirm_dispatch(order_id, req.agent_id)
    return DispatchOut(
        order=OrderReadDTO.from_domain(result.order),
        movements=[MovementOut.from_domain(m) for m in result.movements],
    )


@app.post("/orders/{order_id}/refuse", response_model=OrderReadDTO)
def refuse(order_id: str, service: DispatchService = Depends(get_dispatch_service)):
    return OrderReadDTO.from_domain(service.refuse_order(order_id))


@app.get("/agents", response_model=list[AgentOut])
def list_agents(store: DispatchStore = Depends(get_store)):
    return [AgentOut.from_domain(a) for a in store.list_agents()]


@app.get("/agents/{agent_id}/balances")
def agent_balances(agent_id: str, service: DispatchService = Depends(get_dispatch_service)):
    return {"agent_id": agent_id, "balances": service.balances(agent_id)}


@app.get("/agents/{agent_id}/movements", response_model=list[MovementOut])
def agent_movements(agent_id: str, service: DispatchService = Depends(get_dispatch_service)):
    return [MovementOut.from_domain(m) for m in service.movement_history(agent_id)]
