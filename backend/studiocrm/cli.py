import argparse
import asyncio
import json
from decimal import Decimal
from pathlib import Path
from typing import Any

from studiocrm.core.config import settings
from studiocrm.core.logging_config import configure_logging
from studiocrm.db.base import Base
from studiocrm.db.session import SessionLocal, engine
from studiocrm.services import calendar_import
from studiocrm.services import coupons as coupons_service
from studiocrm.services import pricing


def _parse_item(raw: str) -> coupons_service.CartItem:
    """Parse a `SKU:PRICE[:QTY]` cart item argument."""
    parts = [part.strip() for part in (raw or "").split(":")]
    if len(parts) not in (2, 3) or not parts[0]:
        raise SystemExit(f"Invalid --item {raw!r}; expected SKU:PRICE[:QTY]")
    price = pricing.to_decimal(parts[1])
    if price is None or price < 0:
        raise SystemExit(f"Invalid price in --item {raw!r}")
    quantity = 1
    if len(parts) == 3:
        if not parts[2].isdigit() or int(parts[2]) < 1:
            raise SystemExit(f"Invalid quantity in --item {raw!r}")
        quantity = int(parts[2])
    return coupons_service.CartItem(sku=parts[0], price=price, quantity=quantity)


def _parse_amount(raw: str | None) -> Decimal | None:
    if raw is None:
        return None
    amount = pricing.to_decimal(raw)
    if amount is None or amount < 0:
        raise SystemExit(f"Invalid --amount {raw!r}")
    return amount


def _print_json(payload: dict[str, Any]) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


def _read_ics_file(raw_path: str) -> str:
    path = Path(raw_path).expanduser()
    if not path.is_file():
        raise SystemExit(f"Input file not found: {path}")
    return path.read_text(encoding="utf-8", errors="replace")


async def init_db() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    print("Database tables created")


async def import_ics(args: argparse.Namespace, text: str | None = None) -> dict[str, Any]:
    options = calendar_import.ImportOptions(
        include_past=bool(args.include_past),
        from_date=args.from_date,
        to_date=args.to_date,
        dry_run=bool(args.dry_run),
        tz=args.tz,
    )
    async with SessionLocal() as session:
        if args.url:
            report = await calendar_import.import_calendar_url(session, args.url, options)
        else:
            report = await calendar_import.import_calendar_text(session, text or "", options)
    payload = report.as_dict()
    payload["sessions"] = [
        {"id": item.id, "icalUid": item.ical_uid, "start": str(item.start_time), "title": item.title}
        for item in report.sessions
    ]
    return payload


async def validate_coupon(
    *, code: str, amount: Decimal | None, items: list[coupons_service.CartItem], use_db: bool
) -> dict[str, Any]:
    service = coupons_service.CouponService()
    if not use_db:
        result = await service.validate(code, order_amount=amount, items=items or None)
    else:
        async with SessionLocal() as session:
            result = await service.validate(
                code,
                order_amount=amount,
                items=items or None,
                persisted=coupons_service.persisted_loader(session),
            )
    payload: dict[str, Any] = {"valid": result.valid}
    if result.coupon is not None:
        payload["coupon"] = {
            "code": result.coupon.code,
            "discountType": result.coupon.discount_type.value,
            "discountValue": str(result.coupon.discount_value),
            "discountAmount": str(result.coupon.discount_amount),
            "source": result.coupon.source.value,
        }
    if result.error:
        payload["error"] = result.error
    return payload


def _add_calendar_commands(subparsers) -> None:
    import_cmd = subparsers.add_parser("import-ics", help="Import an iCalendar file or feed into sessions")
    source = import_cmd.add_mutually_exclusive_group(required=True)
    source.add_argument("--file", help="Path to a .ics file")
    source.add_argument("--url", help="Calendar feed URL (https:// or webcal://)")
    import_cmd.add_argument("--include-past", action="store_true", help="Import events before today as well")
    import_cmd.add_argument("--from", dest="from_date", help="First local day to import (YYYY-MM-DD)")
    import_cmd.add_argument("--to", dest="to_date", help="Last local day to import (YYYY-MM-DD)")
    import_cmd.add_argument("--tz", help=f"Zone for floating times (default {settings.default_cal_tz})")
    import_cmd.add_argument("--dry-run", action="store_true", help="Parse and report without writing")


def _add_coupon_commands(subparsers) -> None:
    validate = subparsers.add_parser("validate-coupon", help="Resolve a coupon code and compute its discount")
    validate.add_argument("--code", required=True, help="Coupon code")
    validate.add_argument("--amount", help="Order amount when no items are given")
    validate.add_argument("--item", action="append", default=[], help="Cart item SKU:PRICE[:QTY] (repeatable)")
    validate.add_argument("--no-db", action="store_true", help="Skip persisted coupons")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Studio CRM utilities")
    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("init-db", help="Create database tables from the models")
    _add_calendar_commands(subparsers)
    _add_coupon_commands(subparsers)
    return parser


def _run_cli_command(args: argparse.Namespace) -> bool:
    if args.command == "init-db":
        asyncio.run(init_db())
        return True

    if args.command == "import-ics":
        text = None if args.url else _read_ics_file(args.file)
        try:
            _print_json(asyncio.run(import_ics(args, text)))
        except (calendar_import.CalendarImportError, ValueError) as exc:
            raise SystemExit(f"Import failed: {exc}") from exc
        return True

    if args.command == "validate-coupon":
        payload = asyncio.run(
            validate_coupon(
                code=args.code,
                amount=_parse_amount(args.amount),
                items=[_parse_item(raw) for raw in args.item],
                use_db=not args.no_db,
            )
        )
        _print_json(payload)
        return True

    return False


def main():
    configure_logging(settings.log_json)
    parser = _build_parser()
    args = parser.parse_args()
    if not _run_cli_command(args):
        parser.print_help()


if __name__ == "__main__":
    main()
