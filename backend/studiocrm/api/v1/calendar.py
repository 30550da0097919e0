from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from studiocrm.db.session import get_session
from studiocrm.schemas.calendar import CalendarUrlImport, DuplicateCleanupRead, ImportReportRead
from studiocrm.services import calendar_import, sessions as sessions_service

router = APIRouter(prefix="/calendar", tags=["calendar"])

_DATE_PATTERN = r"^\d{4}-\d{2}-\d{2}$"
_MAX_ICS_BYTES = 10 * 1024 * 1024


def import_options(
    include_past: bool = Query(default=False, alias="includePast"),
    from_date: str | None = Query(default=None, alias="from", pattern=_DATE_PATTERN),
    to_date: str | None = Query(default=None, alias="to", pattern=_DATE_PATTERN),
    dry_run: bool = Query(default=False, alias="dryRun"),
    tz: str | None = Query(default=None, max_length=64),
) -> calendar_import.ImportOptions:
    return calendar_import.ImportOptions(
        include_past=include_past, from_date=from_date, to_date=to_date, dry_run=dry_run, tz=tz
    )


async def _read_ics_body(request: Request) -> str:
    raw = await request.body()
    if len(raw) > _MAX_ICS_BYTES:
        raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="Calendar file too large")
    if not raw.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Calendar body is empty")
    return raw.decode("utf-8", errors="replace")


@router.post(
    "/import",
    response_model=ImportReportRead,
    openapi_extra={"requestBody": {"content": {"text/calendar": {"schema": {"type": "string"}}}, "required": True}},
)
async def import_calendar(
    request: Request,
    options: calendar_import.ImportOptions = Depends(import_options),
    session: AsyncSession = Depends(get_session),
) -> ImportReportRead:
    text = await _read_ics_body(request)
    try:
        report = await calendar_import.import_calendar_text(session, text, options)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return ImportReportRead.model_validate(report)


@router.post("/import-url", response_model=ImportReportRead)
async def import_calendar_from_url(
    payload: CalendarUrlImport = Body(...),
    options: calendar_import.ImportOptions = Depends(import_options),
    session: AsyncSession = Depends(get_session),
) -> ImportReportRead:
    try:
        report = await calendar_import.import_calendar_url(session, payload.url, options)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return ImportReportRead.model_validate(report)


@router.post("/cleanup-duplicates", response_model=DuplicateCleanupRead)
async def cleanup_duplicates(
    dry_run: bool = Query(default=False, alias="dryRun"),
    session: AsyncSession = Depends(get_session),
) -> DuplicateCleanupRead:
    deleted = await sessions_service.cleanup_duplicate_sessions(session, dry_run=dry_run)
    return DuplicateCleanupRead(dry_run=dry_run, deleted=deleted, count=len(deleted))
