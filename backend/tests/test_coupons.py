import asyncio
import json
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from studiocrm.core.config import settings
from studiocrm.models.coupon import DiscountCoupon, DiscountType
from studiocrm.services import coupons
from studiocrm.services.coupons import (
    CartItem,
    CouponService,
    CouponSource,
    DiscountKind,
    EnvCoupon,
    EnvCouponCache,
    PersistedCoupon,
)

NOW = datetime(2025, 6, 1, 12, tzinfo=timezone.utc)


def _loader_for(*found: PersistedCoupon):
    by_code = {coupon.code: coupon for coupon in found}

    async def load(code: str) -> PersistedCoupon | None:
        return by_code.get(code)

    return load


def _service(raw_json: str | None = None, **kwargs) -> CouponService:
    cache = EnvCouponCache(loader=lambda: raw_json, clock=lambda: NOW)
    return CouponService(env_cache=cache, clock=lambda: NOW, **kwargs)


def test_parse_env_coupons_accepts_list_and_object_forms() -> None:
    entries = [
        {"code": " summer10 ", "type": "percent", "value": 10},
        {"code": "FIVE", "type": "amount", "value": "5", "allowedSkus": ["family-basic", "family-basic", "newborn-basic"]},
        {"code": "WINDOW", "type": "fixed", "value": 7.5, "startDate": "2025-01-01", "endsAt": "2025-01-31"},
    ]
    parsed = coupons.parse_env_coupons(json.dumps(entries))
    assert parsed == coupons.parse_env_coupons(json.dumps({"coupons": entries}))

    summer, five, window = parsed
    assert summer.code == "SUMMER10"
    assert summer.kind == DiscountKind.percentage
    assert summer.value == Decimal("10")
    assert summer.allowed_skus == ()
    assert five.kind == DiscountKind.fixed
    assert five.allowed_skus == ("family-basic", "newborn-basic")
    assert window.start_date == datetime(2025, 1, 1, tzinfo=timezone.utc)
    assert window.end_date is not None and window.end_date.date().isoformat() == "2025-01-31"
    assert window.end_date.hour == 23


def test_parse_env_coupons_drops_invalid_entries(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.WARNING)
    raw = json.dumps(
        [
            {"type": "percent", "value": 10},
            {"code": "BADTYPE", "type": "bogo", "value": 10},
            {"code": "ZERO", "type": "percent", "value": 0},
            {"code": "NAN", "type": "percent", "value": "NaN"},
            {"code": "BOOL", "type": "amount", "value": True},
            "not-an-object",
            {"code": "OK", "type": "percentage", "value": 15},
        ]
    )
    parsed = coupons.parse_env_coupons(raw)
    assert [coupon.code for coupon in parsed] == ["OK"]
    assert sum(1 for record in caplog.records if record.getMessage() == "coupon_entry_ignored") == 6


@pytest.mark.parametrize("raw", ["{not json", '"a string"', '{"coupons": 3}', "", None])
def test_malformed_coupons_json_is_soft(raw: str | None, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.WARNING)
    assert coupons.parse_env_coupons(raw) == ()
    if raw and raw.strip():
        assert any(record.getMessage() == "coupons_json_invalid" for record in caplog.records)


def test_sku_rules() -> None:
    open_coupon = EnvCoupon(code="ANY", kind=DiscountKind.percentage, value=Decimal("10"))
    assert coupons.is_sku_allowed(open_coupon, None)
    assert coupons.is_sku_allowed(open_coupon, "whatever")

    star = EnvCoupon(code="STAR", kind=DiscountKind.percentage, value=Decimal("10"), allowed_skus=("ALL",))
    assert coupons.is_sku_allowed(star, None)

    restricted = EnvCoupon(code="R", kind=DiscountKind.percentage, value=Decimal("10"), allowed_skus=("Family-Basic",))
    assert coupons.is_sku_allowed(restricted, "family-basic")
    assert coupons.is_sku_allowed(restricted, " FAMILY-BASIC ")
    assert not coupons.is_sku_allowed(restricted, "family-premium")
    assert not coupons.is_sku_allowed(restricted, None)


def test_activity_window_and_persisted_state() -> None:
    windowed = EnvCoupon(
        code="W",
        kind=DiscountKind.fixed,
        value=Decimal("5"),
        start_date=NOW - timedelta(days=1),
        end_date=NOW + timedelta(days=1),
    )
    assert coupons.is_active(windowed, NOW)
    assert not coupons.is_active(windowed, NOW - timedelta(days=2))
    assert not coupons.is_active(windowed, NOW + timedelta(days=2))

    base = dict(code="P", kind=DiscountKind.fixed, value=Decimal("5"))
    assert coupons.is_active(PersistedCoupon(**base), NOW)
    assert not coupons.is_active(PersistedCoupon(**base, enabled=False), NOW)
    assert not coupons.is_active(PersistedCoupon(**base, usage_limit=3, usage_count=3), NOW)
    assert coupons.is_active(PersistedCoupon(**base, usage_limit=3, usage_count=2), NOW)


def test_fixed_discount_never_exceeds_applicable_subtotal() -> None:
    coupon = EnvCoupon(code="FIFTY", kind=DiscountKind.fixed, value=Decimal("50"))
    result = coupons.compute_discount(coupon, [CartItem(price=Decimal("10"), quantity=3, sku="print")], None, now=NOW)
    assert result.valid
    assert result.discount_amount == Decimal("30.00")
    assert result.applicable_subtotal == Decimal("30.00")


def test_percentage_discount_respects_max_cap() -> None:
    coupon = PersistedCoupon(
        code="HALF", kind=DiscountKind.percentage, value=Decimal("50"), max_discount_amount=Decimal("20")
    )
    result = coupons.compute_discount(coupon, None, Decimal("100"), now=NOW)
    assert result.valid
    assert result.discount_amount == Decimal("20.00")


def test_percentage_is_clamped_and_computed_in_cents() -> None:
    over = EnvCoupon(code="OVER", kind=DiscountKind.percentage, value=Decimal("150"))
    assert coupons.compute_discount(over, None, Decimal("40"), now=NOW).discount_amount == Decimal("40.00")

    third = EnvCoupon(code="THIRD", kind=DiscountKind.percentage, value=Decimal("33.333"))
    items = [CartItem(price=Decimal("0.10"), quantity=3), CartItem(price=Decimal("19.99"))]
    assert coupons.compute_discount(third, items, None, now=NOW).discount_amount == Decimal("6.76")


def test_discount_only_counts_eligible_lines() -> None:
    coupon = EnvCoupon(
        code="FAM", kind=DiscountKind.percentage, value=Decimal("10"), allowed_skus=("family-basic",)
    )
    items = [
        CartItem(price=Decimal("120"), sku="family-basic"),
        CartItem(price=Decimal("80"), sku="newborn-basic", quantity=2),
    ]
    result = coupons.compute_discount(coupon, items, None, now=NOW)
    assert result.applicable_subtotal == Decimal("120.00")
    assert result.discount_amount == Decimal("12.00")


def test_no_eligible_items_is_invalid() -> None:
    coupon = EnvCoupon(code="FAM", kind=DiscountKind.fixed, value=Decimal("10"), allowed_skus=("family-basic",))
    result = coupons.compute_discount(coupon, [CartItem(price=Decimal("50"), sku="gift-card")], None, now=NOW)
    assert not result.valid
    assert result.discount_amount == Decimal("0.00")


def test_strict_95_codes_reject_other_tiers() -> None:
    vcwien = coupons.DEFAULT_COUPONS[0]
    assert vcwien.code == "VCWIEN"

    result = coupons.compute_discount(vcwien, [CartItem(price=Decimal("80"), sku="family-basic")], None, now=NOW)
    assert not result.valid
    assert result.reason == coupons.STRICT_95_REASON

    assert coupons.compute_discount(vcwien, None, Decimal("80"), now=NOW).reason == coupons.STRICT_95_REASON

    items = [
        CartItem(price=Decimal("95.00"), sku="family-basic"),
        CartItem(price=Decimal("95"), sku="gift-card"),
        CartItem(price=Decimal("150"), sku="family-premium"),
    ]
    result = coupons.compute_discount(vcwien, items, None, now=NOW)
    assert result.valid
    assert result.applicable_subtotal == Decimal("95.00")
    assert result.discount_amount == Decimal("47.50")


def test_strict_95_requires_eligible_line_at_95() -> None:
    vcwien = coupons.DEFAULT_COUPONS[0]
    items = [CartItem(price=Decimal("95"), sku="gift-card"), CartItem(price=Decimal("120"), sku="family-basic")]
    result = coupons.compute_discount(vcwien, items, None, now=NOW)
    assert result.reason == coupons.STRICT_95_REASON


def test_strict_codes_are_configurable(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "coupons_95_only", " cl50, other ")
    assert coupons.strict_95_codes() == frozenset({"CL50", "OTHER"})

    vcwien = coupons.DEFAULT_COUPONS[0]
    result = coupons.compute_discount(vcwien, [CartItem(price=Decimal("120"), sku="family-basic")], None, now=NOW)
    assert result.valid
    assert result.discount_amount == Decimal("60.00")


def test_state_reasons_are_joined() -> None:
    coupon = PersistedCoupon(
        code="OLD",
        kind=DiscountKind.fixed,
        value=Decimal("5"),
        enabled=False,
        end_date=NOW - timedelta(days=1),
        usage_limit=1,
        usage_count=1,
        min_order_amount=Decimal("50"),
    )
    result = coupons.compute_discount(coupon, None, Decimal("20"), now=NOW)
    assert not result.valid
    assert result.reason == "; ".join(
        [
            "coupon is not active",
            "coupon has expired",
            "coupon usage limit reached",
            "minimum order amount of 50.00 not reached",
        ]
    )


def test_sku_derived_from_item_name() -> None:
    assert coupons.derive_sku_from_name("Schwangerschaft Basic Gutschein") == "maternity-basic"
    assert coupons.derive_sku_from_name("Family Premium Shooting") == "family-premium"
    assert coupons.derive_sku_from_name("Newborn DELUXE") == "newborn-deluxe"
    assert coupons.derive_sku_from_name("Gift card") is None
    assert CartItem(price=Decimal("95"), name="Family Basic").resolved_sku == "family-basic"
    assert CartItem(price=Decimal("95"), sku="custom", name="Family Basic").resolved_sku == "custom"


def test_env_cache_refreshes_after_ttl() -> None:
    clock = {"now": NOW}
    payload = {"raw": json.dumps([{"code": "A", "type": "percent", "value": 5}])}
    loads = {"count": 0}

    def loader() -> str:
        loads["count"] += 1
        return payload["raw"]

    cache = EnvCouponCache(loader=loader, ttl=lambda: timedelta(seconds=60), clock=lambda: clock["now"])
    assert [c.code for c in cache.get()] == ["A"]

    payload["raw"] = json.dumps([{"code": "B", "type": "percent", "value": 5}])
    clock["now"] = NOW + timedelta(seconds=30)
    assert [c.code for c in cache.get()] == ["A"]
    assert loads["count"] == 1

    clock["now"] = NOW + timedelta(seconds=61)
    assert [c.code for c in cache.get()] == ["B"]
    assert loads["count"] == 2

    payload["raw"] = "[]"
    assert cache.force_refresh() == 0
    assert cache.get() == ()


def test_reload_seconds_has_a_floor(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "coupon_reload_seconds", 1)
    assert coupons._configured_ttl() == timedelta(seconds=coupons.MIN_RELOAD_SECONDS)
    monkeypatch.setattr(settings, "coupon_reload_seconds", 120)
    assert coupons._configured_ttl() == timedelta(seconds=120)


def test_lookup_precedence_env_then_persisted_then_defaults() -> None:
    env_json = json.dumps([{"code": "FOO", "type": "amount", "value": 5}])
    persisted = PersistedCoupon(code="FOO", kind=DiscountKind.percentage, value=Decimal("10"))
    db_only = PersistedCoupon(code="DBONLY", kind=DiscountKind.percentage, value=Decimal("10"))
    service = _service(env_json)
    loader = _loader_for(persisted, db_only)

    found = asyncio.run(service.lookup(" foo ", persisted=loader))
    assert isinstance(found, EnvCoupon)
    assert found.kind == DiscountKind.fixed

    assert asyncio.run(service.lookup("dbonly", persisted=loader)) is db_only

    default = asyncio.run(service.lookup("cl50", persisted=loader))
    assert default is not None and default.source == CouponSource.default

    assert asyncio.run(service.lookup("missing", persisted=loader)) is None
    assert asyncio.run(service.lookup("  ", persisted=loader)) is None


def test_validate_returns_structured_results() -> None:
    service = _service(json.dumps([{"code": "FOO", "type": "amount", "value": 5}]))

    missing_code = asyncio.run(service.validate("", order_amount=Decimal("10")))
    assert missing_code.valid is False
    assert missing_code.error == "Coupon code is required"

    missing_amount = asyncio.run(service.validate("FOO"))
    assert missing_amount.valid is False
    assert missing_amount.error

    unknown = asyncio.run(service.validate("NOPE", order_amount=Decimal("10")))
    assert unknown.valid is False
    assert unknown.error == "Coupon not found"

    ok = asyncio.run(service.validate("foo", order_amount=Decimal("100")))
    assert ok.valid is True
    assert ok.coupon is not None
    assert ok.coupon.code == "FOO"
    assert ok.coupon.discount_type == DiscountKind.fixed
    assert ok.coupon.discount_amount == Decimal("5.00")
    assert ok.coupon.source == CouponSource.env

    strict = asyncio.run(service.validate("VCWIEN", items=[CartItem(price=Decimal("80"), sku="family-basic")]))
    assert strict.valid is False
    assert strict.error == coupons.STRICT_95_REASON


def test_persisted_from_row_normalises_types() -> None:
    row = DiscountCoupon(
        code="spring",
        name="Spring",
        discount_type=DiscountType.fixed_amount,
        discount_value=Decimal("15.00"),
        min_order_amount=Decimal("60.00"),
        usage_limit=10,
        usage_count=4,
        start_date=datetime(2025, 3, 1),
        is_active=True,
        applicable_products=["family-basic"],
    )
    coupon = coupons.persisted_from_row(row)
    assert coupon.code == "SPRING"
    assert coupon.kind == DiscountKind.fixed
    assert coupon.source == CouponSource.persisted
    assert coupon.start_date == datetime(2025, 3, 1, tzinfo=timezone.utc)
    assert coupon.allowed_skus == ("family-basic",)
    assert coupon.min_order_amount == Decimal("60.00")


def test_env_coupons_ignore_min_order_and_end_on_last_day() -> None:
    raw = json.dumps([{"code": "TEN", "type": "fixed", "value": 10, "minOrderCents": 50000, "endsAt": "2025-06-01"}])
    [coupon] = coupons.parse_env_coupons(raw)
    assert not hasattr(coupon, "min_order_amount")
    assert coupon.end_date == datetime(2025, 6, 1, 23, 59, 59, 999999, tzinfo=timezone.utc)

    late_same_day = datetime(2025, 6, 1, 21, tzinfo=timezone.utc)
    result = coupons.compute_discount(coupon, None, Decimal("20"), now=late_same_day)
    assert result.valid
    assert result.discount_amount == Decimal("10.00")
