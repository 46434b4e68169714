"""Guarantee and warranty eligibility for a sold battery.

``evaluate`` is a pure function of the purchase record, the slab table and
the current time, so a status can be recomputed offline from the same inputs.
The only rounding is the floor on elapsed months.
"""
from datetime import datetime, timezone
from typing import Callable, Iterable

import structlog

from .concurrency import LatestOnly
from .errors import NetworkError, NotOwnedError, ValidationError
from .order_service import OrderServiceClient
from .schemas import BatteryRecord, BatteryStatus, WarrantySlab
from .utils import months_between, parse_warranty_string

log = structlog.get_logger()

GUARANTEE = "guarantee"
WARRANTY = "warranty"
NOT_ELIGIBLE = "not_eligible"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WarrantySlabTable:
    """Discount tiers keyed by months elapsed since the guarantee ended.

    Ranges are half-open ``[min, max)``; a null max is unbounded. Overlapping
    ranges are rejected so at most one slab can match any month count.
    """

    def __init__(self, slabs: Iterable[WarrantySlab]):
        self.slabs = sorted(slabs, key=lambda s: s.min_months_after_guarantee)
        for prev, cur in zip(self.slabs, self.slabs[1:]):
            if prev.max_months_after_guarantee is None or prev.max_months_after_guarantee > cur.min_months_after_guarantee:
                raise ValueError(f"warranty slabs {prev.slab_name!r} and {cur.slab_name!r} overlap")

    def __len__(self) -> int:
        return len(self.slabs)

    def match(self, months_after_guarantee: int) -> WarrantySlab | None:
        for slab in self.slabs:
            if slab.contains(months_after_guarantee):
                return slab
        return None


def coverage_months(record: BatteryRecord) -> tuple[int, int]:
    """(guarantee, warranty) months. The warranty string wins over the stored periods."""
    guarantee, warranty = parse_warranty_string(record.warranty_string)
    if guarantee <= 0:
        guarantee = record.guarantee_period_months or 0
    if warranty <= 0:
        warranty = record.warranty_period_months or 0
    return guarantee, warranty


def evaluate(record: BatteryRecord, slabs: WarrantySlabTable | Iterable[WarrantySlab], now: datetime) -> BatteryStatus:
    table = slabs if isinstance(slabs, WarrantySlabTable) else WarrantySlabTable(slabs)
    guarantee, warranty = coverage_months(record)
    elapsed = months_between(record.purchase_date, now)
    replaced = record.latest_replacement is not None

    common = dict(
        serial_number=record.serial_number,
        purchase_date=record.purchase_date,
        guarantee_period_months=guarantee,
        warranty_period_months=warranty,
        months_elapsed=elapsed,
        is_replaced=replaced,
        latest_replacement=record.latest_replacement,
    )

    if elapsed < guarantee:
        return BatteryStatus(under_guarantee=True, months_after_guarantee=0, matched_warranty_slab=None,
                             eligibility=GUARANTEE, **common)

    after = elapsed - guarantee
    slab = table.match(after) if 0 < warranty and after < warranty else None
    return BatteryStatus(under_guarantee=False, months_after_guarantee=after, matched_warranty_slab=slab,
                         eligibility=WARRANTY if slab else NOT_ELIGIBLE, **common)


def describe(status: BatteryStatus) -> str:
    if status.eligibility == GUARANTEE:
        return "Eligible for free replacement"
    if status.eligibility == WARRANTY and status.matched_warranty_slab:
        return f"Eligible for warranty replacement at {status.matched_warranty_slab.discount_percentage:g}% discount"
    return "Not eligible for replacement"


class WarrantyChecker:
    """Serial number lookups whose visible result always belongs to the latest call."""

    def __init__(self, service: OrderServiceClient, clock: Callable[[], datetime] = utcnow, max_attempts: int = 2):
        self.service = service
        self.clock = clock
        self.max_attempts = max(1, max_attempts)
        self.latest = LatestOnly("warranty_lookup")

    @property
    def current(self) -> BatteryStatus | None:
        return self.latest.current

    @property
    def current_error(self) -> Exception | None:
        return self.latest.current_error

    async def _fetch(self, serial_number: str, customer_id=None) -> BatteryStatus:
        for attempt in range(1, self.max_attempts + 1):
            try:
                record = await self.service.lookup_battery(serial_number)
                slabs = await self.service.get_warranty_slabs()
                break
            except NetworkError as e:
                # read-only lookup, retried
                if attempt == self.max_attempts:
                    raise
                log.info("warranty_lookup_retry", serial_number=serial_number, attempt=attempt, error=e.message)
        if customer_id is not None and record.customer_id is not None and str(record.customer_id) != str(customer_id):
            log.info("warranty_lookup_not_owned", serial_number=serial_number, customer_id=str(customer_id))
            raise NotOwnedError("This serial number does not belong to your account")
        try:
            table = WarrantySlabTable(slabs)
        except ValueError as e:
            log.error("warranty_slabs_invalid", error=str(e))
            raise NetworkError("Warranty slab configuration is invalid") from e
        status = evaluate(record, table, self.clock())
        log.info("warranty_status", serial_number=serial_number, eligibility=status.eligibility,
                 months_elapsed=status.months_elapsed, is_replaced=status.is_replaced)
        return status

    async def check(self, serial_number: str, customer_id=None) -> BatteryStatus:
        """Status for ``serial_number``. With ``customer_id``, a battery sold to
        another customer raises NotOwnedError."""
        serial_number = (serial_number or "").strip()
        if not serial_number:
            raise ValidationError("serial_number", "Please enter a serial number")
        return await self.latest.run(self._fetch, serial_number, customer_id)
