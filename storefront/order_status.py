"""Order confirmation state, derived from line items on every read.

There is no stored status for this. A line is confirmed once the back office
has assigned it a real serial number (water products are never serialized and
always count as confirmed); an order is confirmed once every one of its lines
is. Only pending orders may be cancelled.
"""
import asyncio
import enum
from typing import Literal

import structlog
from pydantic import BaseModel

from .concurrency import CollapsingRefresher, Poller, RefreshSignal
from .errors import DomainError, NetworkError
from .order_service import OrderServiceClient
from .schemas import LineDisplay, Order, OrderLineRecord, OrderView
from .utils import money, round_half_up

log = structlog.get_logger()

ORDER_UPDATED = "orderUpdated"
PENDING_PLACEHOLDER = "Pending"

# "N/A" looks like a backend placeholder for "no serial yet" rather than a real
# domain value; it is treated as unassigned.
UNASSIGNED_SERIALS = frozenset({"PENDING", "N/A"})


class OrderState(str, enum.Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"


def is_water(line: OrderLineRecord) -> bool:
    return (line.category or "").strip().lower() == "water"


def has_valid_serial(line: OrderLineRecord) -> bool:
    serial = (line.serial_number or "").strip()
    return bool(serial) and serial not in UNASSIGNED_SERIALS


def is_item_confirmed(line: OrderLineRecord) -> bool:
    return is_water(line) or has_valid_serial(line)


def state(order: Order) -> OrderState:
    if order.items and all(is_item_confirmed(l) for l in order.items):
        return OrderState.CONFIRMED
    return OrderState.PENDING


def is_confirmed(order: Order) -> bool:
    return state(order) is OrderState.CONFIRMED


def can_cancel(order: Order) -> bool:
    return state(order) is OrderState.PENDING


def line_display(line: OrderLineRecord) -> LineDisplay:
    if not is_item_confirmed(line):
        return LineDisplay(confirmed=False, serial_number=line.serial_number, quantity=line.quantity,
                           unit_price=PENDING_PLACEHOLDER, discount_amount=PENDING_PLACEHOLDER,
                           discount_percent=PENDING_PLACEHOLDER, final_amount=PENDING_PLACEHOLDER)
    mrp, final = float(line.mrp), float(line.final_amount)
    discount_amount = discount_percent = 0.0
    if mrp > 0 and final > 0 and mrp > final:
        discount_amount = mrp - final
        discount_percent = round_half_up(discount_amount / mrp * 100, 2)
    return LineDisplay(
        confirmed=True,
        serial_number=line.serial_number,
        quantity=line.quantity,
        unit_price=money(mrp if mrp > 0 else final),
        discount_amount=money(discount_amount),
        discount_percent=discount_percent,
        final_amount=money(final),
    )


def order_total(order: Order) -> float | str:
    if not is_confirmed(order):
        return PENDING_PLACEHOLDER
    total = sum(float(l.final_amount) for l in order.items if is_item_confirmed(l))
    return money(total or order.final_amount or 0)


def order_view(order: Order) -> OrderView:
    current = state(order)
    return OrderView(
        id=order.id,
        invoice_number=order.invoice_number,
        created_at=order.created_at,
        payment_method=order.payment_method,
        payment_status=order.payment_status,
        state=current.value,
        cancellable=current is OrderState.PENDING,
        total=order_total(order),
        lines=[line_display(l) for l in order.items],
    )


class OrderQuery(BaseModel):
    search: str = ""
    status: str = "all"
    sort_field: str = "date"
    direction: Literal["asc", "desc"] = "desc"


def _matches(order: Order, term: str) -> bool:
    fields = [order.invoice_number or str(order.id), order.customer_name, order.customer_phone,
              order.payment_method, order.payment_status]
    if any(term in (f or "").lower() for f in fields):
        return True
    return any(
        term in (v or "").lower()
        for l in order.items
        for v in (l.name, l.sku, l.serial_number, l.category)
    )


def _status_matches(order: Order, status: str) -> bool:
    if (order.payment_status or "").strip().lower() == status:
        return True
    return any((l.payment_status or "").strip().lower() == status for l in order.items)


def _sort_key(field: str):
    def first_name(o: Order) -> str:
        return (o.items[0].name or "") if o.items else ""

    keys = {
        "invoice": lambda o: o.invoice_number or str(o.id),
        "date": lambda o: o.created_at.timestamp() if o.created_at else 0.0,
        "product": first_name,
        "amount": lambda o: float(o.final_amount or 0),
        "status": lambda o: o.payment_status or "",
    }
    return keys.get(field)


def apply_query(orders: list[Order], query: OrderQuery) -> list[Order]:
    data = list(orders)
    if query.search:
        term = query.search.lower()
        data = [o for o in data if _matches(o, term)]
    if query.status and query.status != "all":
        status = query.status.lower()
        data = [o for o in data if _status_matches(o, status)]
    key = _sort_key(query.sort_field)
    if key is not None:
        data.sort(key=key, reverse=query.direction == "desc")
    return data


class OrderBoard:
    """Cached order list for one customer, kept fresh by polling and signals.

    Refreshes are collapsed so at most one request batch is outstanding.
    Cancelling removes the order from the cache at once, then refreshes to
    pick up anything that changed concurrently.
    """

    def __init__(self, service: OrderServiceClient, customer_id=None, signal: RefreshSignal | None = None,
                 poll_interval: float = 10.0):
        self.service = service
        self.customer_id = customer_id
        self.orders: list[Order] = []
        self.error: str | None = None
        self.refresher = CollapsingRefresher(self._load)
        self.poller = Poller(self.refresh, poll_interval)
        self.signal = signal
        self._cancelled: set[str] = set()
        self._unsubscribe = signal.subscribe(ORDER_UPDATED, self._on_signal) if signal else None

    async def _detail(self, order: Order) -> Order:
        try:
            detail = await self.service.get_order_detail(order.id)
        except NetworkError as e:
            log.warning("order_detail_failed", order_id=str(order.id), error=e.message)
            return order.model_copy(update={"items": []})
        if str(detail.id) != str(order.id):
            return order.model_copy(update={"items": []})
        merged = order.model_dump(exclude_unset=True) | detail.model_dump(exclude_unset=True)
        return Order.model_validate(merged)

    async def _load(self) -> list[Order]:
        try:
            base = await self.service.get_orders(self.customer_id)
        except NetworkError as e:
            self.error = e.message
            self.orders = []
            raise
        detailed = await asyncio.gather(*(self._detail(o) for o in base))
        # a load that started before a cancel must not bring the order back
        self.orders = [o for o in detailed if o.items and str(o.id) not in self._cancelled]
        self.error = None
        return self.orders

    async def refresh(self, fresh: bool = False) -> list[Order]:
        return await self.refresher.trigger(fresh=fresh)

    async def _refresh_logged(self, fresh: bool = False) -> None:
        try:
            await self.refresh(fresh=fresh)
        except NetworkError as e:
            # kept on self.error for the view; the next poll retries
            log.warning("orders_refresh_failed", customer_id=self.customer_id, error=e.message)

    async def _on_signal(self, _payload) -> None:
        await self._refresh_logged(fresh=True)

    def find(self, reference: str) -> Order | None:
        for o in self.orders:
            if reference in (o.invoice_number, str(o.id)):
                return o
        return None

    def views(self, query: OrderQuery | None = None) -> list[OrderView]:
        return [order_view(o) for o in apply_query(self.orders, query or OrderQuery())]

    async def cancel(self, order: Order) -> None:
        if is_confirmed(order):
            log.info("cancel_refused_confirmed", invoice_number=order.invoice_number)
            raise DomainError("Cannot cancel order. Order has already been confirmed and serial numbers have been assigned.")
        result = await self.service.cancel_order(order.reference)
        if not result.get("success"):
            raise NetworkError(result.get("error") or "Failed to cancel order")
        log.info("order_cancelled", invoice_number=order.invoice_number)
        self._cancelled.add(str(order.id))
        self.orders = [o for o in self.orders if str(o.id) != str(order.id)]
        if self.signal is not None:
            await self.signal.publish(ORDER_UPDATED, order.reference)
        else:
            await self._refresh_logged(fresh=True)

    def start(self) -> None:
        self.poller.start()

    async def stop(self) -> None:
        await self.poller.stop()
        if self._unsubscribe:
            self._unsubscribe()
