"""Shopping cart keyed by (product id, category).

Prices are snapshotted when a product is first added; later catalog changes do
not reach lines already in the cart. The cart is a convenience copy of what
the customer intends to buy, the order service stays the source of truth once
an order is submitted.
"""
from typing import Iterator

import structlog

from . import pricing
from .errors import DomainError
from .form_state import FormStateStore
from .schemas import CartLine, CartTotals, OldBatteryInfo, Product

log = structlog.get_logger()

CART_NAMESPACE = "azb_cart"
WATER = "water"


def _key(product_id, category: str) -> tuple[str, str]:
    return str(product_id), category


class Cart:
    def __init__(self, lines: list[CartLine] | None = None):
        self._lines: dict[tuple[str, str], CartLine] = {}
        for line in lines or []:
            self._lines[line.key] = line

    def __iter__(self) -> Iterator[CartLine]:
        return iter(self._lines.values())

    def __len__(self) -> int:
        return len(self._lines)

    @property
    def lines(self) -> list[CartLine]:
        return list(self._lines.values())

    @property
    def is_empty(self) -> bool:
        return not self._lines

    def get(self, product_id, category: str) -> CartLine | None:
        return self._lines.get(_key(product_id, category))

    def add(self, product: Product, is_b2b: bool = False) -> CartLine:
        key = _key(product.id, product.category)
        line = self._lines.get(key)
        if line is not None:
            quantity = line.quantity + 1
            if product.qty is not None and quantity > product.qty:
                raise DomainError(f"Only {product.qty} of {product.name or product.id} in stock")
            line.quantity = quantity
            if product.qty is not None:
                line.available_stock = product.qty
            return line

        if product.qty is not None and product.qty < 1:
            raise DomainError(f"{product.name or product.id} is out of stock")
        price = pricing.price_for(product, is_b2b)
        line = CartLine(
            product_id=product.id,
            category=product.category,
            quantity=1,
            unit_price=price.selling_price,
            unit_mrp=price.mrp,
            available_stock=product.qty,
            sku=product.sku,
            name=product.name,
        )
        self._lines[key] = line
        log.debug("cart_line_added", product_id=str(product.id), category=product.category)
        return line

    def remove(self, product_id, category: str) -> None:
        self._lines.pop(_key(product_id, category), None)

    def set_quantity(self, product_id, category: str, quantity: int) -> None:
        if quantity <= 0:
            self.remove(product_id, category)
            return
        line = self.get(product_id, category)
        if line is None:
            return
        if line.available_stock is not None and quantity > line.available_stock:
            raise DomainError(f"Only {line.available_stock} in stock")
        line.quantity = quantity

    def _require(self, product_id, category: str) -> CartLine:
        line = self.get(product_id, category)
        if line is None:
            raise DomainError("Item is not in the cart")
        return line

    def set_serial_number(self, product_id, category: str, serial_number: str | None) -> None:
        line = self._require(product_id, category)
        # water products are not serialized
        line.serial_number = None if category == WATER else (serial_number or None)

    def set_trade_in(self, product_id, category: str, trade_in: OldBatteryInfo | None) -> None:
        self._require(product_id, category).trade_in = trade_in

    def total(self) -> float:
        return sum(pricing.line_total(l) for l in self)

    def savings(self) -> float:
        return sum(pricing.line_savings(l) for l in self)

    def item_count(self) -> int:
        return sum(l.quantity for l in self)

    def totals(self) -> CartTotals:
        return pricing.cart_totals(self)

    def clear(self) -> None:
        self._lines.clear()

    def to_state(self) -> dict:
        return {"lines": [l.model_dump(mode="json") for l in self]}

    @classmethod
    def from_state(cls, state: dict | None) -> "Cart":
        if not state:
            return cls()
        return cls([CartLine.model_validate(l) for l in state.get("lines", [])])


class CartRepository:
    """Loads and saves a session's cart through the form-state store."""

    def __init__(self, store: FormStateStore):
        self.store = store

    def load(self, session_id: str) -> Cart:
        return Cart.from_state(self.store.get(session_id, CART_NAMESPACE))

    def save(self, session_id: str, cart: Cart) -> None:
        self.store.save(session_id, CART_NAMESPACE, cart.to_state())

    def clear(self, session_id: str) -> None:
        self.store.clear(session_id, CART_NAMESPACE)
