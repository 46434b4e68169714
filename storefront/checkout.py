"""Cart to order submission, and invoice number recovery.

The order service does not answer ``POST /sales`` with one fixed shape, so the
invoice number is recovered by trying ``INVOICE_EXTRACTORS`` in order. A
response that reports success but matches none of them is an ambiguous
success: the order almost certainly exists server-side, so it must neither be
retried nor presented as a normal invoice.

The cart is never cleared here. Clearing is a separate call the caller makes
once the customer is done with the invoice.
"""
from typing import Any, Callable, Optional

import structlog

from .cart import Cart
from .errors import AmbiguousSuccessError, NetworkError, StorefrontError, ValidationError
from .form_state import FormStateStore
from .order_service import OrderServiceClient
from .schemas import CheckoutForm, CheckoutOutcome, FieldError, OrderItem, OrderSubmission
from .utils import blank, is_valid_phone

log = structlog.get_logger()

CHECKOUT_NAMESPACE = "checkoutState"

Extractor = Callable[[Any], Optional[str]]


def _field(obj: Any, *path: str) -> Optional[str]:
    for name in path:
        if not isinstance(obj, dict):
            return None
        obj = obj.get(name)
    if obj is None or isinstance(obj, (dict, list, bool)):
        return None
    value = str(obj).strip()
    return value or None


def sale_invoice_number(resp: Any) -> Optional[str]:
    return _field(resp, "sale", "invoice_number")


def sale_invoice_number_camel(resp: Any) -> Optional[str]:
    return _field(resp, "sale", "invoiceNumber")


def top_level_invoice_number(resp: Any) -> Optional[str]:
    return _field(resp, "invoice_number")


def top_level_invoice_number_camel(resp: Any) -> Optional[str]:
    return _field(resp, "invoiceNumber")


def response_as_sale(resp: Any) -> Optional[str]:
    """The body is the sale record itself (or a list of its item rows)."""
    if isinstance(resp, list):
        resp = resp[0] if resp else None
    return _field(resp, "invoice_number")


INVOICE_EXTRACTORS: tuple[Extractor, ...] = (
    sale_invoice_number,
    sale_invoice_number_camel,
    top_level_invoice_number,
    top_level_invoice_number_camel,
    response_as_sale,
)


def resolve_invoice_number(resp: Any, extractors: tuple[Extractor, ...] = INVOICE_EXTRACTORS) -> Optional[str]:
    for extract in extractors:
        value = extract(resp)
        if value:
            return value
    return None


def reported_success(resp: Any) -> bool:
    if isinstance(resp, dict) and "success" in resp:
        return bool(resp["success"])
    # a 2xx body without an explicit flag counts as success
    return resp is not None


def validate(cart: Cart, form: CheckoutForm) -> None:
    if blank(form.customer_name):
        raise ValidationError("customer_name", "Customer name and phone are required")
    if blank(form.customer_phone):
        raise ValidationError("customer_phone", "Customer name and phone are required")
    if not is_valid_phone(form.customer_phone):
        raise ValidationError("customer_phone", "Phone number must be 10 digits")
    if cart.is_empty:
        raise ValidationError("cart", "Your cart is empty")


def build_submission(cart: Cart, form: CheckoutForm) -> OrderSubmission:
    items = []
    for line in cart:
        old = line.trade_in
        items.append(OrderItem(
            product_id=line.product_id,
            category=line.category,
            quantity=line.quantity,
            unit_price=line.unit_price,
            serial_number=line.serial_number,
            old_battery_brand=old.brand if old else None,
            old_battery_name=old.name if old else None,
            old_battery_serial_number=old.serial_number if old else None,
            old_battery_ah_va=old.ampere_rating if old else None,
            old_battery_trade_in_value=old.trade_in_value if old else 0,
        ))
    return OrderSubmission(
        customer_id=form.customer_id,
        customer_name=form.customer_name.strip(),
        customer_phone=form.customer_phone.strip(),
        items=items,
        payment_method=form.payment_method,
        payment_status="pending" if form.payment_method == "credit" else "paid",
        notes=(form.notes or "").strip() or None,
    )


class OrderSubmissionResolver:
    def __init__(self, service: OrderServiceClient, form_state: FormStateStore | None = None,
                 extractors: tuple[Extractor, ...] = INVOICE_EXTRACTORS):
        self.service = service
        self.form_state = form_state
        self.extractors = extractors

    async def place_order(self, cart: Cart, form: CheckoutForm) -> str:
        """Validate, submit once, and return the invoice number.

        Raises ValidationError before any network call, NetworkError when the
        service fails or declines, AmbiguousSuccessError when the service
        accepted the order but no invoice number can be found.
        """
        validate(cart, form)
        submission = build_submission(cart, form)
        resp = await self.service.create_order(submission)
        if not reported_success(resp):
            error = resp.get("error") if isinstance(resp, dict) else None
            raise NetworkError(error or "Failed to create order")
        invoice_number = resolve_invoice_number(resp, self.extractors)
        if invoice_number is None:
            log.error("invoice_number_unresolved", response_keys=sorted(resp) if isinstance(resp, dict) else type(resp).__name__)
            raise AmbiguousSuccessError(response=resp)
        log.info("order_submitted", invoice_number=invoice_number, items=len(submission.items),
                 payment_method=submission.payment_method)
        return invoice_number

    async def submit(self, cart: Cart, form: CheckoutForm, session_id: str | None = None) -> CheckoutOutcome:
        try:
            invoice_number = await self.place_order(cart, form)
        except ValidationError as e:
            return CheckoutOutcome(validation_error=FieldError(field=e.field, message=e.message))
        except AmbiguousSuccessError as e:
            return CheckoutOutcome(ambiguous_success=True, message=e.message)
        except StorefrontError as e:
            return CheckoutOutcome(network_error=e.message or "Failed to complete checkout. Please try again.")
        if self.form_state is not None and session_id:
            self.form_state.mark_submitted(session_id, CHECKOUT_NAMESPACE)
        return CheckoutOutcome(invoice_number=invoice_number, message=f"Order placed successfully! Invoice generated: {invoice_number}")
