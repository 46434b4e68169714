from datetime import date, datetime
from typing import List, Optional, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

PaymentMethod = Literal["cash", "card", "upi", "credit"]


def _either(*names: str) -> AliasChoices:
    return AliasChoices(*names)


class Product(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: int | str
    sku: Optional[str] = None
    name: Optional[str] = None
    category: str
    mrp_price: float = Field(0, ge=0, validation_alias=_either("mrp_price", "mrp", "price"))
    selling_price_b2c: Optional[float] = Field(None, ge=0, validation_alias=_either("selling_price_b2c", "selling_price"))
    selling_price_b2b: Optional[float] = Field(None, ge=0)
    qty: Optional[int] = None
    ah_va: Optional[str] = None
    warranty: Optional[str] = None


class OldBatteryInfo(BaseModel):
    brand: Optional[str] = None
    name: Optional[str] = None
    serial_number: Optional[str] = None
    ampere_rating: Optional[str] = None
    trade_in_value: float = Field(0, ge=0)


class CartLine(BaseModel):
    product_id: int | str
    category: str
    quantity: int = Field(1, ge=1)
    unit_price: float
    unit_mrp: float
    available_stock: Optional[int] = None
    sku: Optional[str] = None
    name: Optional[str] = None
    serial_number: Optional[str] = None
    trade_in: Optional[OldBatteryInfo] = None

    @property
    def key(self) -> tuple[str, str]:
        return str(self.product_id), self.category


class PriceBreakdown(BaseModel):
    mrp: float
    selling_price: float
    discount_amount: float
    discount_percent: int


class CartTotals(BaseModel):
    subtotal: float
    savings: float
    total: float
    item_count: int


class ReplacementQuote(BaseModel):
    mrp: float
    discount_percentage: float
    discount_amount: float
    discounted_price: float
    gst_included: float


class OrderItem(BaseModel):
    product_id: int | str
    category: str
    quantity: int = Field(ge=1)
    unit_price: float
    serial_number: Optional[str] = None
    old_battery_brand: Optional[str] = None
    old_battery_name: Optional[str] = None
    old_battery_serial_number: Optional[str] = None
    old_battery_ah_va: Optional[str] = None
    old_battery_trade_in_value: float = 0


class OrderSubmission(BaseModel):
    customer_id: Optional[int | str] = None
    customer_name: str
    customer_phone: str
    items: List[OrderItem] = Field(min_length=1)
    sale_type: str = "retail"
    discount: float = 0
    tax: float = 0
    payment_method: PaymentMethod = "cash"
    payment_status: Literal["pending", "paid"] = "paid"
    notes: Optional[str] = None


class CheckoutForm(BaseModel):
    customer_name: str = ""
    customer_phone: str = ""
    payment_method: PaymentMethod = "cash"
    notes: Optional[str] = None
    customer_id: Optional[int | str] = None


class FieldError(BaseModel):
    field: str
    message: str


class CheckoutOutcome(BaseModel):
    invoice_number: Optional[str] = None
    ambiguous_success: bool = False
    message: Optional[str] = None
    validation_error: Optional[FieldError] = None
    network_error: Optional[str] = None


class OrderLineRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: Optional[int | str] = None
    serial_number: Optional[str] = Field(None, validation_alias=_either("serial_number", "SERIAL_NUMBER"))
    category: str = Field("", validation_alias=_either("category", "CATEGORY"))
    quantity: int = Field(1, validation_alias=_either("quantity", "QUANTITY"))
    mrp: float = Field(0, validation_alias=_either("mrp", "MRP"))
    final_amount: float = Field(0, validation_alias=_either("final_amount", "FINAL_AMOUNT", "finalAmount"))
    name: Optional[str] = Field(None, validation_alias=_either("name", "NAME", "product_name"))
    sku: Optional[str] = Field(None, validation_alias=_either("sku", "SKU", "product_sku"))
    payment_status: Optional[str] = None

    @field_validator("category", mode="before")
    @classmethod
    def _category(cls, v):
        return v or ""

    @field_validator("mrp", "final_amount", mode="before")
    @classmethod
    def _amount(cls, v):
        return v or 0

    @field_validator("quantity", mode="before")
    @classmethod
    def _quantity(cls, v):
        return v or 0

    @field_validator("serial_number", mode="before")
    @classmethod
    def _serial(cls, v):
        return None if v is None else str(v)


class Order(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: int | str
    invoice_number: Optional[str] = None
    created_at: Optional[datetime] = None
    payment_method: Optional[str] = None
    payment_status: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = Field(None, validation_alias=_either("customer_phone", "customer_mobile_number"))
    final_amount: Optional[float] = Field(None, validation_alias=_either("final_amount", "total_amount"))
    items: List[OrderLineRecord] = []

    @field_validator("items", mode="before")
    @classmethod
    def _items(cls, v):
        return v if isinstance(v, list) else []

    @property
    def reference(self) -> str:
        return self.invoice_number or str(self.id)


class LineDisplay(BaseModel):
    confirmed: bool
    serial_number: Optional[str]
    quantity: int
    unit_price: float | str
    discount_amount: float | str
    discount_percent: float | str
    final_amount: float | str


class OrderView(BaseModel):
    id: int | str
    invoice_number: Optional[str]
    created_at: Optional[datetime]
    payment_method: Optional[str]
    payment_status: Optional[str]
    state: Literal["PENDING", "CONFIRMED"]
    cancellable: bool
    total: float | str
    lines: List[LineDisplay]


class WarrantySlab(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: Optional[int] = None
    slab_name: str
    min_months_after_guarantee: int = Field(validation_alias=_either("min_months_after_guarantee", "min_months"))
    max_months_after_guarantee: Optional[int] = Field(None, validation_alias=_either("max_months_after_guarantee", "max_months"))
    discount_percentage: float

    def contains(self, months: int) -> bool:
        if months < self.min_months_after_guarantee:
            return False
        return self.max_months_after_guarantee is None or months < self.max_months_after_guarantee


class Replacement(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    date: Optional[datetime] = None
    new_serial_number: Optional[str] = Field(None, validation_alias=_either("new_serial_number", "newSerialNumber"))
    type: Optional[Literal["guarantee", "warranty"]] = None
    new_invoice_number: Optional[str] = Field(None, validation_alias=_either("new_invoice_number", "newInvoiceNumber"))


class BatteryRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    serial_number: str = Field(validation_alias=_either("serial_number", "serialNumber"))
    purchase_date: date = Field(validation_alias=_either("purchase_date", "purchaseDate"))
    customer_id: Optional[int | str] = Field(None, validation_alias=_either("customer_id", "customerId"))
    invoice_number: Optional[str] = Field(None, validation_alias=_either("invoice_number", "invoiceNumber"))
    product_name: Optional[str] = Field(None, validation_alias=_either("product_name", "productName"))
    guarantee_period_months: Optional[int] = Field(None, validation_alias=_either("guarantee_period_months", "guaranteePeriodMonths"))
    warranty_period_months: Optional[int] = Field(None, validation_alias=_either("warranty_period_months", "warrantyPeriodMonths"))
    warranty_string: Optional[str] = Field(None, validation_alias=_either("warranty_string", "warrantyString"))
    latest_replacement: Optional[Replacement] = Field(None, validation_alias=_either("latest_replacement", "latestReplacement"))

    @field_validator("purchase_date", mode="before")
    @classmethod
    def _purchase_date(cls, v):
        if isinstance(v, str) and "T" in v:
            return datetime.fromisoformat(v.replace("Z", "+00:00")).date()
        return v


class BatteryStatus(BaseModel):
    serial_number: str
    purchase_date: date
    guarantee_period_months: int
    warranty_period_months: int
    months_elapsed: int
    under_guarantee: bool
    months_after_guarantee: int
    matched_warranty_slab: Optional[WarrantySlab] = None
    eligibility: Literal["guarantee", "warranty", "not_eligible"]
    is_replaced: bool = False
    latest_replacement: Optional[Replacement] = None


class ReplacementRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: Optional[int] = None
    original_serial_number: Optional[str] = None
    new_serial_number: Optional[str] = None
    replacement_type: Optional[str] = None
    replacement_date: Optional[datetime] = None
    discount_percentage: Optional[float] = None
    warranty_slab_name: Optional[str] = None
    new_invoice_number: Optional[str] = None


class CartAddRequest(BaseModel):
    product: Product
    is_b2b: bool = False


class CartLineUpdate(BaseModel):
    quantity: Optional[int] = None
    serial_number: Optional[str] = None
    trade_in: Optional[OldBatteryInfo] = None


class CartResponse(BaseModel):
    lines: List[CartLine]
    totals: CartTotals
