"""Async client for the remote order/warranty service.

The service is an opaque boundary: this module only knows its HTTP contract.
Transport failures and non-success statuses become ``NetworkError`` carrying
the service's own ``error`` message when it sends one; 404/403 on battery
lookups become ``NotFoundError``/``NotOwnedError``.
"""
import os
from typing import Any

import httpx
import structlog

from .errors import NetworkError, NotFoundError, NotOwnedError
from .schemas import BatteryRecord, Order, OrderSubmission, ReplacementRecord, WarrantySlab

log = structlog.get_logger()

ORDER_SERVICE_URL = os.getenv("ORDER_SERVICE_URL", "http://localhost:5000/api")
ORDER_SERVICE_TOKEN = os.getenv("ORDER_SERVICE_TOKEN")
ORDER_SERVICE_TIMEOUT = float(os.getenv("ORDER_SERVICE_TIMEOUT", "15"))


def _parse(model, data, default_error: str):
    """Validate a service payload; a malformed body is a service failure."""
    try:
        return model.model_validate(data)
    except ValueError as e:
        log.warning("order_service_bad_payload", model=model.__name__, error=str(e))
        raise NetworkError(default_error) from e


def _error_message(resp: httpx.Response, default: str) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text or default
    if isinstance(body, dict):
        return body.get("error") or body.get("message") or default
    return default


class OrderServiceClient:
    def __init__(self, base_url: str = ORDER_SERVICE_URL, token: str | None = ORDER_SERVICE_TOKEN,
                 timeout: float = ORDER_SERVICE_TIMEOUT, transport: httpx.AsyncBaseTransport | None = None):
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(base_url=base_url.rstrip("/"), headers=headers,
                                         timeout=httpx.Timeout(timeout), transport=transport)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.aclose()

    async def _request(self, method: str, path: str, default_error: str, **kwargs) -> httpx.Response:
        try:
            resp = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            log.warning("order_service_unreachable", method=method, path=path, error=str(e))
            raise NetworkError(str(e) or default_error) from e
        log.debug("order_service_call", method=method, path=path, status=resp.status_code)
        return resp

    def _json(self, resp: httpx.Response, default_error: str) -> Any:
        if resp.status_code >= 400:
            raise NetworkError(_error_message(resp, default_error))
        try:
            return resp.json()
        except ValueError as e:
            raise NetworkError(default_error) from e

    # -------- Orders --------
    async def create_order(self, submission: OrderSubmission) -> Any:
        """POST the sale. Returns the raw JSON body; its shape is not fixed."""
        resp = await self._request("POST", "/sales", "Failed to create order", json=submission.model_dump(mode="json"))
        return self._json(resp, "Failed to create order")

    async def get_orders(self, customer_id=None, page: int = 1, limit: int = 50) -> list[Order]:
        params: dict[str, Any] = {"page": page, "limit": limit}
        if customer_id:
            params["customer_id"] = customer_id
        resp = await self._request("GET", "/sales", "Failed to load orders", params=params)
        data = self._json(resp, "Failed to load orders")
        if isinstance(data, dict):
            data = data.get("sales", [])
        rows = data if isinstance(data, list) else []
        return [_parse(Order, r, "Failed to load orders") for r in rows]

    async def get_order_detail(self, order_id) -> Order:
        resp = await self._request("GET", f"/sales/{order_id}", "Failed to load order")
        return _parse(Order, self._json(resp, "Failed to load order"), "Failed to load order")

    async def cancel_order(self, invoice_or_id) -> dict:
        resp = await self._request("DELETE", f"/sales/cancel/{invoice_or_id}", "Failed to cancel order")
        if resp.status_code >= 400:
            return {"success": False, "error": _error_message(resp, "Failed to cancel order")}
        body = self._json(resp, "Failed to cancel order")
        return body if isinstance(body, dict) else {"success": bool(body)}

    # -------- Guarantee / warranty --------
    async def lookup_battery(self, serial_number: str) -> BatteryRecord:
        resp = await self._request("GET", f"/guarantee-warranty/battery-status/{serial_number}", "Failed to check battery status")
        if resp.status_code == 404:
            raise NotFoundError(_error_message(resp, "Battery with this serial number not found"))
        if resp.status_code == 403:
            raise NotOwnedError(_error_message(resp, "This serial number does not belong to your account"))
        data = self._json(resp, "Failed to check battery status")
        if not isinstance(data, dict):
            raise NetworkError("Failed to check battery status")
        data = dict(data)
        # nested shape: {customer: {id}, product: {name}}
        data.setdefault("customer_id", (data.get("customer") or {}).get("id"))
        data.setdefault("product_name", (data.get("product") or {}).get("name"))
        return _parse(BatteryRecord, data, "Failed to check battery status")

    async def get_warranty_slabs(self) -> list[WarrantySlab]:
        resp = await self._request("GET", "/guarantee-warranty/warranty-slabs", "Failed to fetch warranty slabs")
        return [_parse(WarrantySlab, s, "Failed to fetch warranty slabs") for s in self._json(resp, "Failed to fetch warranty slabs") or []]

    async def get_replacement_history(self, customer_id=None) -> list[ReplacementRecord]:
        path = f"/guarantee-warranty/history/{customer_id}" if customer_id else "/guarantee-warranty/history"
        resp = await self._request("GET", path, "Failed to fetch replacement history")
        return [_parse(ReplacementRecord, r, "Failed to fetch replacement history")
                for r in self._json(resp, "Failed to fetch replacement history") or []]
