from __future__ import annotations

import enum
import json
import logging
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from studiocrm.core.config import settings
from studiocrm.models.coupon import DiscountCoupon, DiscountType
from studiocrm.services import pricing

logger = logging.getLogger(__name__)

MIN_RELOAD_SECONDS = 10
DEFAULT_STRICT_95_CODES: frozenset[str] = frozenset({"VCWIEN", "CL50", "WL50", "VW50"})
STRICT_95_PRICE = Decimal("95.00")
STRICT_95_TOLERANCE = Decimal("0.000001")
STRICT_95_REASON = "voucher only valid for the 95€ voucher tier"
UNRESTRICTED_SKUS = frozenset({"*", "all"})

BASIC_VOUCHER_SKUS = ("maternity-basic", "family-basic", "newborn-basic")

# (keywords that must all appear in a lower-cased product name, derived SKU)
_SKU_NAME_RULES: tuple[tuple[tuple[str, str], str], ...] = tuple(
    ((shoot_kw, tier), f"{shoot}-{tier}")
    for tier in ("basic", "premium", "deluxe")
    for shoot_kw, shoot in (("schwangerschaft", "maternity"), ("family", "family"), ("newborn", "newborn"))
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_code(code: str | None) -> str:
    return (code or "").strip().upper()


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def derive_sku_from_name(name: str | None) -> str | None:
    lowered = (name or "").lower()
    if not lowered:
        return None
    for keywords, sku in _SKU_NAME_RULES:
        if all(keyword in lowered for keyword in keywords):
            return sku
    return None


class CouponSource(str, enum.Enum):
    env = "env"
    persisted = "persisted"
    default = "default"


class DiscountKind(str, enum.Enum):
    percentage = "percentage"
    fixed = "fixed"


@dataclass(frozen=True)
class CartItem:
    price: Decimal
    quantity: int = 1
    sku: str | None = None
    name: str | None = None

    @property
    def resolved_sku(self) -> str | None:
        return (self.sku or "").strip() or derive_sku_from_name(self.name)


@dataclass(frozen=True)
class DiscountResult:
    valid: bool
    discount_amount: Decimal
    applicable_subtotal: Decimal
    reasons: tuple[str, ...] = ()

    @property
    def reason(self) -> str | None:
        return "; ".join(self.reasons) if self.reasons else None


@dataclass(frozen=True, kw_only=True)
class _CouponBase:
    code: str
    kind: DiscountKind
    value: Decimal
    allowed_skus: tuple[str, ...] = ()
    start_date: datetime | None = None
    end_date: datetime | None = None

    def in_window(self, now: datetime) -> bool:
        if self.start_date is not None and now < self.start_date:
            return False
        if self.end_date is not None and now > self.end_date:
            return False
        return True

    def is_active(self, now: datetime) -> bool:
        return self.in_window(now)

    def allows_sku(self, sku: str | None) -> bool:
        allowed = {str(value).strip().lower() for value in self.allowed_skus}
        if not allowed or allowed & UNRESTRICTED_SKUS:
            return True
        if not sku:
            return False
        return sku.strip().lower() in allowed

    def state_reasons(self, now: datetime, *, order_cents: int) -> list[str]:
        reasons: list[str] = []
        if self.start_date is not None and now < self.start_date:
            reasons.append("coupon is not valid yet")
        if self.end_date is not None and now > self.end_date:
            reasons.append("coupon has expired")
        return reasons

    def cap_discount_cents(self, discount_cents: int) -> int:
        return discount_cents

    def evaluate(
        self,
        *,
        items: Sequence[CartItem] | None,
        order_amount: Decimal | None,
        strict_codes: Iterable[str] = DEFAULT_STRICT_95_CODES,
        now: datetime | None = None,
    ) -> DiscountResult:
        """Decide validity and compute the discount; all arithmetic in integer cents."""
        now = now or _now()
        if items:
            eligible = [item for item in items if self.allows_sku(item.resolved_sku)]
            applicable_cents = sum(pricing.to_cents(item.price) * max(1, int(item.quantity)) for item in eligible)
            order_cents = sum(pricing.to_cents(item.price) * max(1, int(item.quantity)) for item in items)
            tier_prices = [pricing.to_decimal(item.price) for item in eligible]
        else:
            eligible = []
            applicable_cents = pricing.to_cents(order_amount) if order_amount is not None else 0
            order_cents = applicable_cents
            # Without an itemised cart the order amount stands for a single voucher.
            tier_prices = [pricing.to_decimal(order_amount)] if order_amount is not None else []

        applicable = pricing.from_cents(applicable_cents)
        reasons = self.state_reasons(now, order_cents=order_cents)
        if reasons:
            return DiscountResult(valid=False, discount_amount=Decimal("0.00"), applicable_subtotal=applicable, reasons=tuple(reasons))

        if self.code in {normalize_code(code) for code in strict_codes}:
            if not any(price is not None and abs(price - STRICT_95_PRICE) <= STRICT_95_TOLERANCE for price in tier_prices):
                return DiscountResult(
                    valid=False, discount_amount=Decimal("0.00"), applicable_subtotal=applicable, reasons=(STRICT_95_REASON,)
                )

        if items and not eligible:
            return DiscountResult(
                valid=False,
                discount_amount=Decimal("0.00"),
                applicable_subtotal=applicable,
                reasons=("coupon does not apply to any item in the cart",),
            )

        if self.kind == DiscountKind.percentage:
            discount_cents = self.cap_discount_cents(pricing.percent_of_cents(applicable_cents, self.value))
        else:
            discount_cents = pricing.to_cents(self.value)
        discount_cents = max(0, min(discount_cents, applicable_cents))
        return DiscountResult(valid=True, discount_amount=pricing.from_cents(discount_cents), applicable_subtotal=applicable)


@dataclass(frozen=True, kw_only=True)
class EnvCoupon(_CouponBase):
    source: CouponSource = CouponSource.env


@dataclass(frozen=True, kw_only=True)
class PersistedCoupon(_CouponBase):
    source: CouponSource = field(default=CouponSource.persisted, init=False)
    enabled: bool = True
    usage_limit: int | None = None
    usage_count: int = 0
    min_order_amount: Decimal | None = None
    max_discount_amount: Decimal | None = None

    @property
    def usage_exhausted(self) -> bool:
        return self.usage_limit is not None and self.usage_count >= self.usage_limit

    def is_active(self, now: datetime) -> bool:
        return self.enabled and not self.usage_exhausted and self.in_window(now)

    def state_reasons(self, now: datetime, *, order_cents: int) -> list[str]:
        reasons: list[str] = []
        if not self.enabled:
            reasons.append("coupon is not active")
        reasons.extend(super().state_reasons(now, order_cents=order_cents))
        if self.usage_exhausted:
            reasons.append("coupon usage limit reached")
        if self.min_order_amount is not None and order_cents < pricing.to_cents(self.min_order_amount):
            reasons.append(f"minimum order amount of {pricing.quantize_money(self.min_order_amount)} not reached")
        return reasons

    def cap_discount_cents(self, discount_cents: int) -> int:
        if self.max_discount_amount is None:
            return discount_cents
        return min(discount_cents, pricing.to_cents(self.max_discount_amount))


CouponDefinition = EnvCoupon | PersistedCoupon

PersistedCouponLoader = Callable[[str], Awaitable[PersistedCoupon | None]]


DEFAULT_COUPONS: tuple[EnvCoupon, ...] = tuple(
    EnvCoupon(
        code=code,
        kind=DiscountKind.percentage,
        value=Decimal("50"),
        allowed_skus=BASIC_VOUCHER_SKUS,
        source=CouponSource.default,
    )
    for code in ("VCWIEN", "CL50", "WL50", "VW50")
)


def is_active(coupon: CouponDefinition, now: datetime | None = None) -> bool:
    return coupon.is_active(now or _now())


def is_sku_allowed(coupon: CouponDefinition, sku: str | None) -> bool:
    return coupon.allows_sku(sku)


def strict_95_codes() -> frozenset[str]:
    raw = settings.coupons_95_only
    if raw is None or not raw.strip():
        return DEFAULT_STRICT_95_CODES
    return frozenset(normalize_code(code) for code in raw.split(",") if code.strip())


def compute_discount(
    coupon: CouponDefinition,
    items: Sequence[CartItem] | None,
    order_amount: Decimal | None,
    *,
    now: datetime | None = None,
) -> DiscountResult:
    return coupon.evaluate(items=items, order_amount=order_amount, strict_codes=strict_95_codes(), now=now)


# --- COUPONS_JSON ------------------------------------------------------------

_KIND_ALIASES = {
    "percent": DiscountKind.percentage,
    "percentage": DiscountKind.percentage,
    "amount": DiscountKind.fixed,
    "fixed": DiscountKind.fixed,
    "fixed_amount": DiscountKind.fixed,
}


class _InvalidCouponEntry(ValueError):
    pass


def _parse_bound(value: Any, *, end_of_day: bool) -> datetime | None:
    if value in (None, ""):
        return None
    raw = str(value).strip()
    try:
        if len(raw) == 10:
            day = datetime.fromisoformat(raw).date()
            return datetime.combine(day, time.max if end_of_day else time.min, tzinfo=timezone.utc)
        return _as_utc(datetime.fromisoformat(raw.replace("Z", "+00:00")))
    except ValueError as exc:
        raise _InvalidCouponEntry(f"invalid date {raw!r}") from exc


def _first_present(entry: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if entry.get(key) not in (None, ""):
            return entry[key]
    return None


def _entry_skus(entry: dict[str, Any]) -> tuple[str, ...]:
    raw = _first_present(entry, "skus", "allowedSkus", "allowed_skus")
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise _InvalidCouponEntry("skus must be a list")
    return tuple(dict.fromkeys(str(sku).strip() for sku in raw if str(sku).strip()))


def _env_coupon_from_entry(entry: Any) -> EnvCoupon:
    if not isinstance(entry, dict):
        raise _InvalidCouponEntry("entry is not an object")
    code = normalize_code(str(entry.get("code") or ""))
    if not code:
        raise _InvalidCouponEntry("missing code")
    kind = _KIND_ALIASES.get(str(entry.get("type") or "").strip().lower())
    if kind is None:
        raise _InvalidCouponEntry(f"unsupported type {entry.get('type')!r}")
    value = pricing.to_decimal(entry.get("value"))
    if value is None or value <= 0:
        raise _InvalidCouponEntry("value must be a positive number")
    return EnvCoupon(
        code=code,
        kind=kind,
        value=value,
        allowed_skus=_entry_skus(entry),
        start_date=_parse_bound(_first_present(entry, "startsAt", "startDate", "start_date"), end_of_day=False),
        end_date=_parse_bound(_first_present(entry, "endsAt", "endDate", "end_date"), end_of_day=True),
    )


def parse_env_coupons(raw: str | None) -> tuple[EnvCoupon, ...]:
    """Parse COUPONS_JSON (a list, or {"coupons": [...]}); bad input never raises."""
    if raw is None or not raw.strip():
        return ()
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        logger.warning("coupons_json_invalid", extra={"error": str(exc)})
        return ()
    if isinstance(payload, dict):
        payload = payload.get("coupons")
    if not isinstance(payload, list):
        logger.warning("coupons_json_invalid", extra={"error": "expected a list of coupons"})
        return ()

    coupons: dict[str, EnvCoupon] = {}
    for idx, entry in enumerate(payload):
        try:
            coupon = _env_coupon_from_entry(entry)
        except _InvalidCouponEntry as exc:
            logger.warning("coupon_entry_ignored", extra={"index": idx, "error": str(exc)})
            continue
        coupons.setdefault(coupon.code, coupon)
    return tuple(coupons.values())


def _configured_coupons_json() -> str | None:
    return settings.coupons_json


def _configured_ttl() -> timedelta:
    return timedelta(seconds=max(MIN_RELOAD_SECONDS, int(settings.coupon_reload_seconds)))


@dataclass
class EnvCouponCache:
    """Parsed COUPONS_JSON with lazy time-to-live refresh on read."""

    loader: Callable[[], str | None] = _configured_coupons_json
    ttl: Callable[[], timedelta] = _configured_ttl
    clock: Callable[[], datetime] = _now
    value: tuple[EnvCoupon, ...] = ()
    expires_at: datetime | None = None

    def _reload(self, now: datetime) -> tuple[EnvCoupon, ...]:
        self.value = parse_env_coupons(self.loader())
        self.expires_at = now + self.ttl()
        return self.value

    def get(self) -> tuple[EnvCoupon, ...]:
        now = self.clock()
        if self.expires_at is None or now >= self.expires_at:
            return self._reload(now)
        return self.value

    def force_refresh(self) -> int:
        return len(self._reload(self.clock()))


# --- persisted coupons -------------------------------------------------------


def persisted_from_row(row: DiscountCoupon) -> PersistedCoupon:
    kind = DiscountKind.percentage if row.discount_type == DiscountType.percentage else DiscountKind.fixed
    return PersistedCoupon(
        code=normalize_code(row.code),
        kind=kind,
        value=Decimal(str(row.discount_value)),
        allowed_skus=tuple(str(sku) for sku in (row.applicable_products or [])),
        start_date=_as_utc(row.start_date),
        end_date=_as_utc(row.end_date),
        enabled=bool(row.is_active),
        usage_limit=row.usage_limit,
        usage_count=int(row.usage_count or 0),
        min_order_amount=Decimal(str(row.min_order_amount)) if row.min_order_amount is not None else None,
        max_discount_amount=Decimal(str(row.max_discount_amount)) if row.max_discount_amount is not None else None,
    )


async def get_discount_coupon_by_code(session: AsyncSession, *, code: str) -> DiscountCoupon | None:
    cleaned = normalize_code(code)
    if not cleaned:
        return None
    result = await session.execute(select(DiscountCoupon).where(func.upper(DiscountCoupon.code) == cleaned))
    return result.scalars().first()


def persisted_loader(session: AsyncSession) -> PersistedCouponLoader:
    async def _load(code: str) -> PersistedCoupon | None:
        row = await get_discount_coupon_by_code(session, code=code)
        return persisted_from_row(row) if row is not None else None

    return _load


# --- service -----------------------------------------------------------------


@dataclass(frozen=True)
class AppliedCoupon:
    code: str
    discount_type: DiscountKind
    discount_value: Decimal
    discount_amount: Decimal
    source: CouponSource


@dataclass(frozen=True)
class CouponValidation:
    valid: bool
    coupon: AppliedCoupon | None = None
    error: str | None = None


class CouponService:
    """Resolves coupon codes from env JSON, the database and built-in defaults, in that order."""

    def __init__(
        self,
        *,
        env_cache: EnvCouponCache | None = None,
        defaults: Sequence[EnvCoupon] = DEFAULT_COUPONS,
        strict_codes: Callable[[], frozenset[str]] = strict_95_codes,
        clock: Callable[[], datetime] = _now,
    ) -> None:
        self.env_cache = env_cache or EnvCouponCache(clock=clock)
        self.defaults = {coupon.code: coupon for coupon in defaults}
        self.strict_codes = strict_codes
        self.clock = clock

    def force_refresh(self) -> int:
        count = self.env_cache.force_refresh()
        logger.info("coupons_refreshed", extra={"count": count})
        return count

    async def lookup(self, code: str | None, *, persisted: PersistedCouponLoader | None = None) -> CouponDefinition | None:
        needle = normalize_code(code)
        if not needle:
            return None
        for coupon in self.env_cache.get():
            if coupon.code == needle:
                return coupon
        if persisted is not None:
            found = await persisted(needle)
            if found is not None:
                return found
        return self.defaults.get(needle)

    async def validate(
        self,
        code: str | None,
        *,
        order_amount: Decimal | None = None,
        items: Sequence[CartItem] | None = None,
        persisted: PersistedCouponLoader | None = None,
    ) -> CouponValidation:
        if not normalize_code(code):
            return CouponValidation(valid=False, error="Coupon code is required")
        if not items and order_amount is None:
            return CouponValidation(valid=False, error="Order amount or cart items are required")

        coupon = await self.lookup(code, persisted=persisted)
        if coupon is None:
            return CouponValidation(valid=False, error="Coupon not found")

        result = coupon.evaluate(items=items, order_amount=order_amount, strict_codes=self.strict_codes(), now=self.clock())
        if not result.valid:
            logger.info("coupon_rejected", extra={"code": coupon.code, "source": coupon.source.value, "reason": result.reason})
            return CouponValidation(valid=False, error=result.reason)
        return CouponValidation(
            valid=True,
            coupon=AppliedCoupon(
                code=coupon.code,
                discount_type=coupon.kind,
                discount_value=coupon.value,
                discount_amount=result.discount_amount,
                source=coupon.source,
            ),
        )
