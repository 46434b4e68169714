"""Tests for derived order confirmation state and the order board."""

import asyncio
import random
from datetime import datetime, timezone

import pydantic
import pytest

from storefront.concurrency import RefreshSignal
from storefront.errors import DomainError, NetworkError
from storefront.order_status import (
    ORDER_UPDATED, PENDING_PLACEHOLDER, OrderBoard, OrderQuery, OrderState, apply_query, can_cancel,
    is_item_confirmed, line_display, order_total, order_view, state,
)
from storefront.schemas import Order, OrderLineRecord


def _line(serial=None, category="car-truck-tractor", **kw) -> OrderLineRecord:
    return OrderLineRecord(serial_number=serial, category=category, **kw)


def _order(*lines, oid=1, **kw) -> Order:
    return Order(id=oid, invoice_number=kw.pop("invoice_number", f"INV-{oid}"), items=list(lines), **kw)


class TestLineConfirmation:
    @pytest.mark.parametrize("serial", [None, "", "   ", "PENDING", "N/A", " N/A "])
    def test_unassigned_serials_are_pending(self, serial):
        assert not is_item_confirmed(_line(serial))

    def test_real_serial_is_confirmed(self):
        assert is_item_confirmed(_line("ABC123"))

    def test_water_is_always_confirmed(self):
        assert is_item_confirmed(_line(None, category="water"))
        assert is_item_confirmed(_line("PENDING", category="Water"))

    def test_uppercase_keys_parse(self):
        line = OrderLineRecord.model_validate({"SERIAL_NUMBER": "XYZ9", "CATEGORY": "inverter", "QUANTITY": 2, "MRP": 100})
        assert line.serial_number == "XYZ9"
        assert line.quantity == 2
        assert is_item_confirmed(line)


class TestOrderState:
    def test_empty_order_is_pending(self):
        assert state(_order()) is OrderState.PENDING

    def test_all_confirmed(self):
        assert state(_order(_line("A1"), _line(None, category="water"))) is OrderState.CONFIRMED

    def test_one_pending_line_keeps_order_pending(self):
        order = _order(_line("A1"), _line("PENDING"))
        assert state(order) is OrderState.PENDING
        assert can_cancel(order)

    def test_random_orders_match_rule(self):
        rng = random.Random(3)
        serials = [None, "", "PENDING", "N/A", "ABC123"]
        for _ in range(300):
            lines = [_line(rng.choice(serials), category=rng.choice(["water", "inverter", "car"]))
                     for _ in range(rng.randint(0, 5))]
            order = _order(*lines)
            expected = bool(lines) and all(l.category == "water" or l.serial_number == "ABC123" for l in lines)
            assert (state(order) is OrderState.CONFIRMED) == expected
            assert can_cancel(order) == (not expected)


class TestDisplay:
    def test_pending_line_hides_money(self):
        d = line_display(_line(None, mrp=5000, final_amount=4500))
        assert not d.confirmed
        assert d.unit_price == d.final_amount == d.discount_percent == PENDING_PLACEHOLDER

    def test_confirmed_line_discount(self):
        d = line_display(_line("A1", mrp=5000, final_amount=4500))
        assert d.unit_price == 5000
        assert d.discount_amount == 500
        assert d.discount_percent == 10.0
        assert d.final_amount == 4500

    def test_no_discount_when_final_exceeds_mrp(self):
        d = line_display(_line("A1", mrp=100, final_amount=120))
        assert d.discount_amount == 0
        assert d.discount_percent == 0

    def test_order_total(self):
        assert order_total(_order(_line("A1", final_amount=4500), _line(None))) == PENDING_PLACEHOLDER
        assert order_total(_order(_line("A1", final_amount=4500), _line("B2", final_amount=99.999))) == 4600

    def test_view(self):
        v = order_view(_order(_line("A1", final_amount=10)))
        assert v.state == "CONFIRMED"
        assert not v.cancellable
        assert v.invoice_number == "INV-1"


class TestQuery:
    def _orders(self):
        return [
            _order(_line("SER-1", name="Exide 65Ah"), oid=1, payment_status="paid", final_amount=300,
                   created_at=datetime(2026, 1, 1, tzinfo=timezone.utc)),
            _order(_line(None, name="Amaron 100Ah"), oid=2, payment_status="pending", final_amount=100,
                   created_at=datetime(2026, 3, 1, tzinfo=timezone.utc)),
            _order(_line(None, category="water", name="Distilled"), oid=3, payment_status="paid", final_amount=200),
        ]

    def test_default_sort_newest_first(self):
        assert [o.id for o in apply_query(self._orders(), OrderQuery())] == [2, 1, 3]

    def test_search_matches_serial_and_name(self):
        assert [o.id for o in apply_query(self._orders(), OrderQuery(search="ser-1"))] == [1]
        assert [o.id for o in apply_query(self._orders(), OrderQuery(search="amaron"))] == [2]

    def test_status_filter(self):
        assert [o.id for o in apply_query(self._orders(), OrderQuery(status="pending"))] == [2]

    def test_sort_amount_ascending(self):
        ids = [o.id for o in apply_query(self._orders(), OrderQuery(sort_field="amount", direction="asc"))]
        assert ids == [2, 3, 1]

    def test_direction_is_validated(self):
        with pytest.raises(pydantic.ValidationError):
            OrderQuery(direction="sideways")


class FakeOrders:
    """Duck-typed order service with controllable latency."""

    def __init__(self, orders):
        self.orders = {o.id: o for o in orders}
        self.calls: list[str] = []
        self.gate: asyncio.Event | None = None
        self.cancel_result = {"success": True}

    async def get_orders(self, customer_id=None):
        self.calls.append("get_orders")
        if self.gate is not None:
            await self.gate.wait()
        return [o.model_copy(update={"items": []}) for o in self.orders.values()]

    async def get_order_detail(self, order_id):
        self.calls.append(f"detail:{order_id}")
        if order_id == 99 or order_id not in self.orders:
            raise NetworkError("detail unavailable")
        return self.orders[order_id]

    async def cancel_order(self, reference):
        self.calls.append(f"cancel:{reference}")
        if self.cancel_result.get("success"):
            self.orders = {k: o for k, o in self.orders.items() if o.reference != reference}
        return self.cancel_result


class TestOrderBoard:
    async def test_refresh_drops_orders_without_items(self):
        svc = FakeOrders([_order(_line("A1"), oid=1), _order(oid=2), _order(_line(None), oid=99)])
        board = OrderBoard(svc, poll_interval=0)
        orders = await board.refresh()
        assert [o.id for o in orders] == [1]

    async def test_concurrent_refreshes_collapse(self):
        svc = FakeOrders([_order(_line("A1"), oid=1)])
        svc.gate = asyncio.Event()
        board = OrderBoard(svc, poll_interval=0)
        first = asyncio.ensure_future(board.refresh())
        second = asyncio.ensure_future(board.refresh())
        await asyncio.sleep(0)
        svc.gate.set()
        a, b = await asyncio.gather(first, second)
        assert a == b
        assert svc.calls.count("get_orders") == 1
        assert board.refresher.started == 1

    async def test_cancel_confirmed_never_calls_service(self):
        svc = FakeOrders([_order(_line("A1"), oid=1)])
        board = OrderBoard(svc, poll_interval=0)
        await board.refresh()
        svc.calls.clear()
        with pytest.raises(DomainError) as e:
            await board.cancel(board.find("INV-1"))
        assert "already been confirmed" in e.value.message
        assert svc.calls == []
        assert board.find("INV-1") is not None

    async def test_cancel_pending_removes_then_refreshes(self):
        svc = FakeOrders([_order(_line(None), oid=1), _order(_line(None), oid=2)])
        board = OrderBoard(svc, poll_interval=0)
        await board.refresh()
        svc.calls.clear()
        await board.cancel(board.find("INV-1"))
        assert svc.calls[0] == "cancel:INV-1"
        assert "get_orders" in svc.calls
        assert [o.id for o in board.orders] == [2]

    async def test_cancel_failure_keeps_order(self):
        svc = FakeOrders([_order(_line(None), oid=1)])
        svc.cancel_result = {"success": False, "error": "Order already invoiced"}
        board = OrderBoard(svc, poll_interval=0)
        await board.refresh()
        with pytest.raises(NetworkError) as e:
            await board.cancel(board.find("INV-1"))
        assert e.value.message == "Order already invoiced"
        assert board.find("INV-1") is not None

    async def test_signal_triggers_refresh(self):
        signal = RefreshSignal()
        svc = FakeOrders([_order(_line("A1"), oid=1)])
        board = OrderBoard(svc, signal=signal, poll_interval=0)
        await signal.publish(ORDER_UPDATED, "INV-1")
        assert board.find("INV-1") is not None
        await board.stop()
        svc.calls.clear()
        await signal.publish(ORDER_UPDATED, "INV-1")
        assert svc.calls == []

    async def test_cancel_publishes_signal(self):
        signal = RefreshSignal()
        seen = []
        signal.subscribe(ORDER_UPDATED, seen.append)
        svc = FakeOrders([_order(_line(None), oid=1)])
        board = OrderBoard(svc, signal=signal, poll_interval=0)
        await board.refresh()
        await board.cancel(board.find("INV-1"))
        assert seen == ["INV-1"]
        assert board.orders == []

    async def test_against_http_service(self, service, backend):
        backend.add_order([{"category": "inverter", "serial_number": None, "mrp": 100, "final_amount": 90}])
        backend.add_order([{"category": "water", "quantity": 2, "mrp": 20, "final_amount": 36}])
        board = OrderBoard(service, poll_interval=0)
        await board.refresh()
        states = {v.invoice_number: v.state for v in board.views()}
        assert states == {"INV-101": "PENDING", "INV-102": "CONFIRMED"}

        backend.assign_serial("INV-101", "SN-77")
        await board.refresh()
        assert board.find("INV-101") is not None
        assert {v.state for v in board.views()} == {"CONFIRMED"}

    async def test_cancel_during_refresh_does_not_resurrect(self):
        class HeldOrders(FakeOrders):
            def __init__(self, orders):
                super().__init__(orders)
                self.hold = asyncio.Event()

            async def get_order_detail(self, order_id):
                detail = await super().get_order_detail(order_id)
                await self.hold.wait()
                return detail

        svc = HeldOrders([_order(_line(None), oid=1), _order(_line(None), oid=2)])
        board = OrderBoard(svc, poll_interval=0)
        svc.hold.set()
        await board.refresh()
        svc.hold.clear()
        svc.calls.clear()

        refreshing = asyncio.ensure_future(board.refresh())
        while "detail:1" not in svc.calls:
            await asyncio.sleep(0)
        cancelling = asyncio.ensure_future(board.cancel(board.find("INV-1")))
        while "cancel:INV-1" not in svc.calls:
            await asyncio.sleep(0)
        svc.hold.set()
        stale, _ = await asyncio.gather(refreshing, cancelling)

        assert [o.id for o in stale] == [2]
        assert board.find("INV-1") is None
        assert [o.id for o in board.orders] == [2]
        assert svc.calls.count("get_orders") == 2
