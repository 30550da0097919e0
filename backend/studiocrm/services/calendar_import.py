from __future__ import annotations

import asyncio
import logging
import re
import secrets
from collections.abc import Iterable
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timezone

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from studiocrm.core.config import settings
from studiocrm.core.logging_config import import_run_id_ctx_var
from studiocrm.services import ical
from studiocrm.services import sessions as sessions_service
from studiocrm.services.ical import CalendarEvent

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
IMPORTED_CLIENT_PLACEHOLDER = "Imported Client"
DEFAULT_TITLE = "Imported Event"

_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_UNSAFE_ID_CHARS_RE = re.compile(r"[^A-Za-z0-9_-]+")

_UPPER = "A-ZÀ-ÖØ-Þ"
_LOWER = "a-zß-öø-ÿ"
_NAME_WORD = rf"[{_UPPER}][{_LOWER}'’-]+"
_LABELLED_NAME_RE = re.compile(r"\b(?:client|kunde|kundin|with|mit|für|fuer)\s*:\s*([^\n,;|]+)", re.IGNORECASE)
_MIT_NAME_RE = re.compile(rf"\b(?:mit|with)\s+({_NAME_WORD}(?:\s+{_NAME_WORD})?)")
_TWO_WORD_NAME_RE = re.compile(rf"\b({_NAME_WORD}\s+{_NAME_WORD})\b")
_MAX_NAME_LEN = 100

_FETCH_HEADERS = {
    "User-Agent": "studiocrm-calendar-import/1.0",
    "Accept": "text/calendar, text/plain;q=0.9, */*;q=0.1",
}


class CalendarImportError(Exception):
    code = "calendar_import_error"


class CalendarParseError(CalendarImportError):
    """The input as a whole is not an iCalendar document."""

    code = "ics_parse_error"


class CalendarFetchError(CalendarImportError):
    """A remote calendar could not be fetched after all retries."""

    def __init__(self, message: str, *, hint: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.hint = hint
        self.status_code = status_code

    @property
    def code(self) -> str:  # type: ignore[override]
        return f"ics_fetch_{self.hint}"


@dataclass(frozen=True)
class ImportOptions:
    include_past: bool = False
    from_date: str | None = None
    to_date: str | None = None
    dry_run: bool = False
    tz: str | None = None


@dataclass(frozen=True)
class ImportWindow:
    cutoff: datetime
    upper: datetime | None = None


@dataclass(frozen=True)
class NormalizedSession:
    id: str
    ical_uid: str | None
    start_time: datetime
    end_time: datetime
    title: str
    description: str
    location: str
    client_name_guess: str


@dataclass
class ImportReport:
    run_id: str
    dry_run: bool
    cutoff: datetime
    upper: datetime | None
    parsed: int = 0
    filtered: int = 0
    invalid: int = 0
    duplicates: int = 0
    imported: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    sessions: list[NormalizedSession] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        payload = asdict(self)
        payload.pop("sessions")
        payload["cutoff"] = ical.format_utc(self.cutoff)
        payload["upper"] = ical.format_utc(self.upper) if self.upper else None
        return payload


# --- import window -----------------------------------------------------------


def _parse_local_date(raw: str, *, param: str) -> date:
    value = (raw or "").strip()
    if not _ISO_DATE_RE.match(value):
        raise ValueError(f"'{param}' must be a date in YYYY-MM-DD format")
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise ValueError(f"'{param}' is not a valid calendar date: {value}") from exc


def _local_to_utc(day: date, at: time, tz: str) -> datetime:
    resolved = ical.to_utc(datetime.combine(day, at), tz)
    if resolved is None:
        raise ValueError(f"Unknown timezone: {tz}")
    return resolved


def resolve_import_window(
    *,
    include_past: bool = False,
    from_date: str | None = None,
    to_date: str | None = None,
    tz: str | None = None,
    now: datetime | None = None,
) -> ImportWindow:
    """Compute the [cutoff, upper] import window in UTC.

    An explicit `from_date` wins over `include_past`; without either the cutoff
    is the start of today in the studio timezone.
    """
    zone = ical.resolve_zone_name(tz or settings.default_cal_tz)
    if from_date:
        cutoff = _local_to_utc(_parse_local_date(from_date, param="from"), time.min, zone)
    elif include_past:
        cutoff = EPOCH
    else:
        today = ical.render_local(now or datetime.now(timezone.utc), zone)
        cutoff = _local_to_utc(today.date(), time.min, zone)

    upper = _local_to_utc(_parse_local_date(to_date, param="to"), time(23, 59, 59), zone) if to_date else None
    return ImportWindow(cutoff=cutoff, upper=upper)


def filter_for_import(
    events: Iterable[CalendarEvent], cutoff: datetime, upper: datetime | None = None
) -> list[CalendarEvent]:
    kept: list[CalendarEvent] = []
    for event in events:
        start = ical.parse_utc(event.dtstart)
        if start is None:
            logger.info("ics_event_skipped", extra={"reason": "unresolved_start", "uid": event.uid, "raw": event.raw_dtstart})
            continue
        if start < cutoff or (upper is not None and start > upper):
            continue
        kept.append(event)
    return kept


# --- normalisation -----------------------------------------------------------


def _clean_name(value: str) -> str:
    return " ".join(value.split())[:_MAX_NAME_LEN].strip()


def guess_client_name(description: str | None, summary: str | None) -> str:
    """Best-effort client name from free text; first matching pattern wins."""
    texts = [text for text in (description or "", summary or "") if text.strip()]
    for text in texts:
        match = _LABELLED_NAME_RE.search(text)
        if match and _clean_name(match.group(1)):
            return _clean_name(match.group(1))
    match = _MIT_NAME_RE.search(summary or "")
    if match:
        return _clean_name(match.group(1))
    for text in texts:
        match = _TWO_WORD_NAME_RE.search(text)
        if match:
            return _clean_name(match.group(1))
    return IMPORTED_CLIENT_PLACEHOLDER


def session_id_for(uid: str | None, *, run_id: str) -> str:
    sanitized = _UNSAFE_ID_CHARS_RE.sub("", uid or "")[:255]
    return sanitized or f"ical-{run_id}-{secrets.token_hex(6)}"


def to_normalized_session(event: CalendarEvent, *, run_id: str) -> NormalizedSession | None:
    start = ical.parse_utc(event.dtstart)
    end = ical.parse_utc(event.dtend)
    if start is None or end is None:
        return None
    return NormalizedSession(
        id=session_id_for(event.uid, run_id=run_id),
        ical_uid=event.uid,
        start_time=start,
        end_time=end,
        title=event.summary.strip() or DEFAULT_TITLE,
        description=event.description,
        location=event.location,
        client_name_guess=guess_client_name(event.description, event.summary),
    )


def _dedupe_by_uid(items: list[NormalizedSession]) -> list[NormalizedSession]:
    # Later occurrences of a UID replace earlier ones but keep their position.
    positions: dict[str, int] = {}
    result: list[NormalizedSession] = []
    for item in items:
        if item.ical_uid and item.ical_uid in positions:
            result[positions[item.ical_uid]] = item
            continue
        if item.ical_uid:
            positions[item.ical_uid] = len(result)
        result.append(item)
    return result


# --- fetching ----------------------------------------------------------------


def _normalize_calendar_url(url: str) -> str:
    cleaned = (url or "").strip()
    if cleaned.lower().startswith("webcal://"):
        cleaned = "https://" + cleaned[len("webcal://") :]
    if not cleaned.lower().startswith(("http://", "https://")):
        raise CalendarFetchError("Calendar URL must start with http(s):// or webcal://", hint="invalid_url")
    return cleaned


def _safe_host(url: str) -> str:
    try:
        return httpx.URL(url).host
    except Exception:
        return "-"


def _status_error(status_code: int) -> CalendarFetchError:
    if status_code in {401, 403}:
        return CalendarFetchError(
            "The calendar server refused access. The calendar is probably not public; "
            "use the secret iCal address from the calendar settings.",
            hint="unauthorized",
            status_code=status_code,
        )
    if status_code == 404:
        return CalendarFetchError(
            "The calendar URL was not found. Check that the full iCal link was copied.",
            hint="not_found",
            status_code=status_code,
        )
    return CalendarFetchError(
        f"The calendar server answered with HTTP {status_code}.", hint="http_status", status_code=status_code
    )


async def _fetch_once(client: httpx.AsyncClient, url: str) -> str:
    try:
        resp = await client.get(url)
    except httpx.HTTPError as exc:
        raise CalendarFetchError(f"The calendar server could not be reached ({type(exc).__name__}).", hint="unreachable") from exc
    if resp.status_code >= 400:
        raise _status_error(resp.status_code)
    text = resp.text
    if ical.looks_like_html(text):
        raise CalendarFetchError(
            "The URL returned a web page instead of calendar data. "
            "Use the private/secret address in iCal format (ending in .ics), not the calendar's share link.",
            hint="html_instead_of_ics",
            status_code=resp.status_code,
        )
    if not ical.looks_like_calendar(text):
        raise CalendarFetchError(
            "The URL did not return iCalendar data (BEGIN:VCALENDAR missing).",
            hint="not_calendar",
            status_code=resp.status_code,
        )
    return text


def _retry_delay_seconds(attempt: int) -> float:
    return max(0, int(settings.ics_fetch_backoff_ms)) * max(1, attempt) / 1000


async def _fetch_with_retries(url: str, *, attempts: int, transport: httpx.AsyncBaseTransport | None) -> str:
    last_error: CalendarFetchError | None = None
    timeout = httpx.Timeout(20.0, connect=5.0)
    async with httpx.AsyncClient(
        timeout=timeout, headers=_FETCH_HEADERS, follow_redirects=True, transport=transport
    ) as client:
        for attempt in range(1, attempts + 1):
            try:
                return await _fetch_once(client, url)
            except CalendarFetchError as exc:
                last_error = exc
                logger.warning(
                    "ics_fetch_attempt_failed",
                    extra={"attempt": attempt, "attempts": attempts, "hint": exc.hint, "host": _safe_host(url)},
                )
            if attempt < attempts:
                await asyncio.sleep(_retry_delay_seconds(attempt))
    if last_error is None:
        raise CalendarFetchError("The calendar could not be fetched.", hint="unreachable")
    raise last_error


async def fetch_ics_text(url: str, *, transport: httpx.AsyncBaseTransport | None = None) -> str:
    """Fetch a remote calendar, retrying with linear backoff under an overall timeout."""
    target = _normalize_calendar_url(url)
    attempts = max(1, int(settings.ics_fetch_attempts))
    try:
        return await asyncio.wait_for(
            _fetch_with_retries(target, attempts=attempts, transport=transport),
            timeout=float(settings.ics_fetch_timeout_seconds),
        )
    except asyncio.TimeoutError as exc:
        raise CalendarFetchError(
            f"Fetching the calendar took longer than {settings.ics_fetch_timeout_seconds:g}s.", hint="timeout"
        ) from exc


# --- import runs -------------------------------------------------------------


def _ensure_calendar_document(text: str) -> None:
    if ical.looks_like_html(text):
        raise CalendarParseError("The uploaded content is an HTML page, not an iCalendar (.ics) file.")
    if not ical.looks_like_calendar(text):
        raise CalendarParseError("The uploaded content is not an iCalendar file (BEGIN:VCALENDAR missing).")


def prepare_import(text: str, options: ImportOptions, *, run_id: str, now: datetime | None = None) -> ImportReport:
    """Parse, window-filter and normalise; no persistence."""
    _ensure_calendar_document(text)
    window = resolve_import_window(
        include_past=options.include_past,
        from_date=options.from_date,
        to_date=options.to_date,
        tz=options.tz,
        now=now,
    )
    events = ical.parse_calendar_text(text, default_tz=options.tz, fallback_tz=settings.default_cal_tz)
    report = ImportReport(run_id=run_id, dry_run=options.dry_run, cutoff=window.cutoff, upper=window.upper)
    report.parsed = len(events)
    report.invalid = sum(1 for event in events if ical.parse_utc(event.dtstart) is None)

    candidates = filter_for_import(events, window.cutoff, window.upper)
    report.filtered = len(candidates)

    normalized: list[NormalizedSession] = []
    for event in candidates:
        item = to_normalized_session(event, run_id=run_id)
        if item is None:
            report.invalid += 1
            logger.info("ics_event_skipped", extra={"reason": "unresolved_end", "uid": event.uid})
            continue
        normalized.append(item)

    report.sessions = _dedupe_by_uid(normalized)
    report.duplicates = len(normalized) - len(report.sessions)
    report.skipped = report.parsed - len(report.sessions)
    return report


async def _persist(session: AsyncSession, report: ImportReport) -> None:
    for item in report.sessions:
        try:
            _, created = await sessions_service.upsert_imported_session(session, item)
            await session.commit()
        except SQLAlchemyError as exc:
            await session.rollback()
            report.failed += 1
            logger.warning("ics_session_upsert_failed", extra={"session_id": item.id, "uid": item.ical_uid, "error": str(exc)})
            continue
        if created:
            report.created += 1
        else:
            report.updated += 1
    report.imported = report.created + report.updated


async def import_calendar_text(
    session: AsyncSession, text: str, options: ImportOptions, *, now: datetime | None = None
) -> ImportReport:
    run_id = secrets.token_hex(4)
    token = import_run_id_ctx_var.set(run_id)
    try:
        report = prepare_import(text, options, run_id=run_id, now=now)
        if not options.dry_run:
            await _persist(session, report)
        logger.info("ics_import_finished", extra={"import_report": report.as_dict()})
        return report
    finally:
        import_run_id_ctx_var.reset(token)


async def import_calendar_url(
    session: AsyncSession,
    url: str,
    options: ImportOptions,
    *,
    now: datetime | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ImportReport:
    text = await fetch_ics_text(url, transport=transport)
    return await import_calendar_text(session, text, options, now=now)
