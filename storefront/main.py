import logging
import os
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Depends, Header, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from .db import SessionLocal, engine
from . import models
from .cart import CartRepository
from .checkout import CHECKOUT_NAMESPACE, OrderSubmissionResolver
from .concurrency import IdleCache, RefreshSignal
from .errors import NotFoundError, StorefrontError, ValidationError
from .export_excel import orders_to_excel
from .form_state import FormStateStore
from .order_service import OrderServiceClient
from .order_status import ORDER_UPDATED, OrderBoard, OrderQuery
from .pricing import replacement_quote
from .schemas import (
    BatteryStatus, CartAddRequest, CartLineUpdate, CartResponse, CheckoutForm, CheckoutOutcome,
    OrderView, ReplacementRecord,
)
from .warranty import WarrantyChecker, describe

structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
)

log = structlog.get_logger()

ORDERS_POLL_SECONDS = float(os.getenv("ORDERS_POLL_SECONDS", "10"))
SESSION_CACHE_SIZE = int(os.getenv("SESSION_CACHE_SIZE", "100"))
SESSION_IDLE_SECONDS = float(os.getenv("SESSION_IDLE_SECONDS", "900"))

models.Base.metadata.create_all(bind=engine)

service = OrderServiceClient()
signal = RefreshSignal()
# idle boards are stopped (poller and signal subscription) when evicted
boards = IdleCache(max_size=SESSION_CACHE_SIZE, ttl=SESSION_IDLE_SECONDS, on_evict=OrderBoard.stop)
checkers = IdleCache(max_size=SESSION_CACHE_SIZE, ttl=SESSION_IDLE_SECONDS)

@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await boards.clear()
    await checkers.clear()
    await service.aclose()

app = FastAPI(title="Battery Storefront", lifespan=lifespan)

ALLOW = os.getenv("CORS_ORIGIN", "http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOW,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

def get_service() -> OrderServiceClient:
    return service

def get_signal() -> RefreshSignal:
    return signal

def session_id(x_session_id: str = Header(..., alias="X-Session-Id")) -> str:
    return x_session_id

def customer_id(x_customer_id: str | None = Header(None, alias="X-Customer-Id")) -> str | None:
    return x_customer_id

async def get_board(cust: str | None = Depends(customer_id), svc: OrderServiceClient = Depends(get_service),
                    sig: RefreshSignal = Depends(get_signal)) -> OrderBoard:
    key = cust or ""
    board = await boards.get(key)
    if board is None:
        board = OrderBoard(svc, customer_id=cust, signal=sig, poll_interval=ORDERS_POLL_SECONDS)
        if ORDERS_POLL_SECONDS > 0:
            board.start()
        await boards.put(key, board)
    return board

async def get_checker(sid: str = Depends(session_id), svc: OrderServiceClient = Depends(get_service)) -> WarrantyChecker:
    checker = await checkers.get(sid)
    if checker is None:
        checker = WarrantyChecker(svc)
        await checkers.put(sid, checker)
    return checker

@app.exception_handler(StorefrontError)
async def storefront_error(request: Request, exc: StorefrontError):
    body = {"error": exc.message, "kind": type(exc).__name__}
    if isinstance(exc, ValidationError):
        body["field"] = exc.field
    return JSONResponse(status_code=exc.status_code, content=body)

# -------- Health --------
@app.get("/api/health")
async def api_health():
    return {"ok": True}

# -------- Cart --------
def cart_response(cart) -> CartResponse:
    return CartResponse(lines=cart.lines, totals=cart.totals())

@app.get("/api/cart", response_model=CartResponse)
async def get_cart(sid: str = Depends(session_id), db: Session = Depends(get_db)):
    return cart_response(CartRepository(FormStateStore(db)).load(sid))

@app.post("/api/cart/items", response_model=CartResponse)
async def add_to_cart(req: CartAddRequest, sid: str = Depends(session_id), db: Session = Depends(get_db)):
    repo = CartRepository(FormStateStore(db))
    cart = repo.load(sid)
    cart.add(req.product, is_b2b=req.is_b2b)
    repo.save(sid, cart)
    return cart_response(cart)

@app.put("/api/cart/items/{product_id}/{category}", response_model=CartResponse)
async def update_cart_item(product_id: str, category: str, req: CartLineUpdate, sid: str = Depends(session_id), db: Session = Depends(get_db)):
    repo = CartRepository(FormStateStore(db))
    cart = repo.load(sid)
    if req.quantity is not None:
        cart.set_quantity(product_id, category, req.quantity)
    if cart.get(product_id, category) is not None:
        if "serial_number" in req.model_fields_set:
            cart.set_serial_number(product_id, category, req.serial_number)
        if "trade_in" in req.model_fields_set:
            cart.set_trade_in(product_id, category, req.trade_in)
    repo.save(sid, cart)
    return cart_response(cart)

@app.delete("/api/cart/items/{product_id}/{category}", response_model=CartResponse)
async def remove_cart_item(product_id: str, category: str, sid: str = Depends(session_id), db: Session = Depends(get_db)):
    repo = CartRepository(FormStateStore(db))
    cart = repo.load(sid)
    cart.remove(product_id, category)
    repo.save(sid, cart)
    return cart_response(cart)

@app.delete("/api/cart", response_model=CartResponse)
async def clear_cart(sid: str = Depends(session_id), db: Session = Depends(get_db)):
    repo = CartRepository(FormStateStore(db))
    repo.clear(sid)
    return cart_response(repo.load(sid))

# -------- Checkout --------
@app.get("/api/checkout/form")
async def get_checkout_form(sid: str = Depends(session_id), db: Session = Depends(get_db)):
    return FormStateStore(db).get(sid, CHECKOUT_NAMESPACE) or {}

@app.put("/api/checkout/form")
async def save_checkout_form(form: CheckoutForm, sid: str = Depends(session_id), db: Session = Depends(get_db)):
    FormStateStore(db).save(sid, CHECKOUT_NAMESPACE, form.model_dump(mode="json"))
    return {"ok": True}

CHECKOUT_STATUS = {"invoice": 201, "ambiguous": 202, "validation": 422, "network": 502}

@app.post("/api/checkout", response_model=CheckoutOutcome)
async def checkout(form: CheckoutForm, response: Response, sid: str = Depends(session_id), cust: str | None = Depends(customer_id),
                   db: Session = Depends(get_db), svc: OrderServiceClient = Depends(get_service),
                   sig: RefreshSignal = Depends(get_signal)):
    store = FormStateStore(db)
    cart = CartRepository(store).load(sid)
    if form.customer_id is None:
        form.customer_id = cust
    outcome = await OrderSubmissionResolver(svc, store).submit(cart, form, session_id=sid)
    if outcome.invoice_number:
        response.status_code = CHECKOUT_STATUS["invoice"]
        await sig.publish(ORDER_UPDATED, outcome.invoice_number)
    elif outcome.ambiguous_success:
        response.status_code = CHECKOUT_STATUS["ambiguous"]
        await sig.publish(ORDER_UPDATED, None)
    elif outcome.validation_error:
        response.status_code = CHECKOUT_STATUS["validation"]
    else:
        response.status_code = CHECKOUT_STATUS["network"]
    return outcome

# -------- Orders --------
@app.get("/api/orders", response_model=list[OrderView])
async def list_orders(q: str | None = None, status: str = "all", sort: str = Query("date", pattern="^(invoice|date|product|amount|status)$"),
                      direction: str = Query("desc", pattern="^(asc|desc)$"), board: OrderBoard = Depends(get_board)):
    await board.refresh()
    return board.views(OrderQuery(search=q or "", status=status, sort_field=sort, direction=direction))

@app.post("/api/orders/{invoice_number}/cancel")
async def cancel_order(invoice_number: str, board: OrderBoard = Depends(get_board)):
    order = board.find(invoice_number)
    if order is None:
        await board.refresh()
        order = board.find(invoice_number)
    if order is None:
        raise NotFoundError("Order not found")
    await board.cancel(order)
    return {"success": True, "message": "Order cancelled successfully"}

# -------- Guarantee / warranty --------
@app.get("/api/warranty/{serial_number}")
async def warranty_status(serial_number: str, mrp: float | None = None, cust: str | None = Depends(customer_id),
                          checker: WarrantyChecker = Depends(get_checker)):
    status: BatteryStatus = await checker.check(serial_number, customer_id=cust)
    if checker.current is not status:
        # a newer lookup started while this one was in flight
        return JSONResponse(status_code=409, content={"error": "Superseded by a newer lookup", "kind": "Superseded"})
    body = {"status": status.model_dump(mode="json"), "message": describe(status)}
    if mrp is not None and status.matched_warranty_slab is not None:
        body["quote"] = replacement_quote(mrp, status.matched_warranty_slab.discount_percentage).model_dump()
    return body

@app.get("/api/replacements", response_model=list[ReplacementRecord])
async def replacement_history(cust: str | None = Depends(customer_id), svc: OrderServiceClient = Depends(get_service)):
    return await svc.get_replacement_history(cust)

# -------- Export --------
@app.get("/export/excel")
async def export_excel(board: OrderBoard = Depends(get_board)):
    await board.refresh()
    x = orders_to_excel(board.views())
    return Response(content=x, media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet", headers={"Content-Disposition": "attachment; filename=orders.xlsx"})
