"""Shared fixtures: an in-memory order service behind httpx.MockTransport,
and a throwaway SQLite database for the form-state store."""

import json
import os
import re
from datetime import datetime, timezone

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ORDERS_POLL_SECONDS", "0")

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from storefront import models
from storefront.form_state import FormStateStore
from storefront.order_service import OrderServiceClient
from storefront.schemas import Product

BASE_URL = "http://orders.test/api"

DEFAULT_SLABS = [
    {"id": 1, "slab_name": "0-6 months", "min_months": 0, "max_months": 6, "discount_percentage": 50},
    {"id": 2, "slab_name": "6-12 months", "min_months": 6, "max_months": 12, "discount_percentage": 25},
]


class FakeBackend:
    """Minimal stand-in for the remote sales / guarantee-warranty API."""

    def __init__(self):
        self.calls: list[tuple[str, str]] = []
        self.submissions: list[dict] = []
        self.orders: dict[int, dict] = {}
        self.batteries: dict[str, dict] = {}
        self.slabs = list(DEFAULT_SLABS)
        self.create_response = None
        self.next_id = 1

    def add_order(self, items, invoice_number=None, payment_status="paid", created_at="2026-10-01T10:00:00Z"):
        oid = self.next_id
        self.next_id += 1
        self.orders[oid] = {
            "id": oid,
            "invoice_number": invoice_number or f"INV-{100 + oid}",
            "created_at": created_at,
            "payment_method": "cash",
            "payment_status": payment_status,
            "items": items,
        }
        return self.orders[oid]

    def assign_serial(self, invoice_number, serial):
        for o in self.orders.values():
            if o["invoice_number"] == invoice_number:
                for item in o["items"]:
                    if item.get("category") != "water":
                        item["serial_number"] = serial

    def _order_by_ref(self, ref):
        for o in self.orders.values():
            if ref in (o["invoice_number"], str(o["id"])):
                return o
        return None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.removeprefix("/api")
        self.calls.append((request.method, path))

        if request.method == "POST" and path == "/sales":
            body = json.loads(request.content)
            self.submissions.append(body)
            if self.create_response is not None:
                return httpx.Response(200, json=self.create_response)
            items = [
                {"category": i["category"], "quantity": i["quantity"], "serial_number": None,
                 "mrp": i["unit_price"], "final_amount": i["unit_price"] * i["quantity"]}
                for i in body["items"]
            ]
            o = self.add_order(items, payment_status=body["payment_status"])
            return httpx.Response(201, json={"success": True, "sale": {"id": o["id"], "invoice_number": o["invoice_number"]}})

        if request.method == "GET" and path == "/sales":
            return httpx.Response(200, json=[{k: v for k, v in o.items() if k != "items"} for o in self.orders.values()])

        m = re.fullmatch(r"/sales/(\d+)", path)
        if request.method == "GET" and m:
            o = self.orders.get(int(m.group(1)))
            if o is None:
                return httpx.Response(404, json={"error": "Sale not found"})
            return httpx.Response(200, json=o)

        m = re.fullmatch(r"/sales/cancel/(.+)", path)
        if request.method == "DELETE" and m:
            o = self._order_by_ref(m.group(1))
            if o is None:
                return httpx.Response(404, json={"error": "Order not found"})
            del self.orders[o["id"]]
            return httpx.Response(200, json={"success": True})

        m = re.fullmatch(r"/guarantee-warranty/battery-status/(.+)", path)
        if m:
            b = self.batteries.get(m.group(1))
            if b is None:
                return httpx.Response(404, json={"error": "Battery with this serial number not found"})
            if b.get("foreign"):
                return httpx.Response(403, json={"error": "This serial number does not belong to your account"})
            return httpx.Response(200, json=b)

        if path == "/guarantee-warranty/warranty-slabs":
            return httpx.Response(200, json=self.slabs)

        if path.startswith("/guarantee-warranty/history"):
            return httpx.Response(200, json=[])

        return httpx.Response(404, json={"error": "no route"})


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def service(backend):
    return OrderServiceClient(base_url=BASE_URL, token="t0ken", transport=httpx.MockTransport(backend))


@pytest.fixture
def db():
    engine = create_engine("sqlite://", poolclass=StaticPool, connect_args={"check_same_thread": False})
    models.Base.metadata.create_all(bind=engine)
    session = sessionmaker(bind=engine, autoflush=False)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def store(db):
    return FormStateStore(db)


def make_product(pid=1, category="car-truck-tractor", mrp=5000.0, b2c=4500.0, b2b=4200.0, qty=10, **kw) -> Product:
    return Product(id=pid, category=category, mrp_price=mrp, selling_price_b2c=b2c, selling_price_b2b=b2b, qty=qty,
                   name=kw.pop("name", f"Battery {pid}"), sku=kw.pop("sku", f"SKU-{pid}"), **kw)


def fixed_clock(*args):
    now = datetime(*args, tzinfo=timezone.utc)
    return lambda: now
