from __future__ import annotations

import hashlib
import logging
from typing import TYPE_CHECKING

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from studiocrm.models.photo_session import PhotographySession

if TYPE_CHECKING:
    from studiocrm.services.calendar_import import NormalizedSession

logger = logging.getLogger(__name__)


async def get_session_by_ical_uid(session: AsyncSession, *, ical_uid: str) -> PhotographySession | None:
    result = await session.execute(select(PhotographySession).where(PhotographySession.ical_uid == ical_uid))
    return result.scalar_one_or_none()


def _disambiguated_id(item: NormalizedSession) -> str:
    digest = hashlib.sha256((item.ical_uid or item.id).encode("utf-8")).hexdigest()[:10]
    return f"{item.id[:240]}-{digest}"


def _apply_imported_fields(row: PhotographySession, item: NormalizedSession) -> None:
    row.title = item.title
    row.description = item.description
    row.location = item.location
    row.client_name = item.client_name_guess
    row.start_time = item.start_time
    row.end_time = item.end_time
    if item.ical_uid:
        row.ical_uid = item.ical_uid


async def upsert_imported_session(session: AsyncSession, item: NormalizedSession) -> tuple[PhotographySession, bool]:
    """Insert or update an imported session; returns (row, created).

    Rows are matched by iCal UID first so re-importing a feed never duplicates
    events, then by primary key.
    """
    row = await get_session_by_ical_uid(session, ical_uid=item.ical_uid) if item.ical_uid else None
    row_id = item.id
    if row is None:
        row = await session.get(PhotographySession, item.id)
        if row is not None and row.ical_uid not in (None, item.ical_uid):
            # Different UIDs can sanitise to the same id; never take over another event.
            row_id = _disambiguated_id(item)
            row = await session.get(PhotographySession, row_id)

    if row is not None:
        _apply_imported_fields(row, item)
        await session.flush()
        return row, False

    row = PhotographySession(id=row_id)
    _apply_imported_fields(row, item)
    session.add(row)
    await session.flush()
    return row, True


def _duplicate_key(row: PhotographySession) -> tuple[object, object, str]:
    return row.start_time, row.end_time, (row.title or "").strip().lower()


async def cleanup_duplicate_sessions(session: AsyncSession, *, dry_run: bool = False) -> list[str]:
    """Delete sessions sharing exact start, end and title, keeping one per cluster.

    The survivor is the oldest row carrying an iCal UID, else the oldest row.
    """
    rows = (
        (await session.execute(select(PhotographySession).order_by(PhotographySession.created_at, PhotographySession.id)))
        .scalars()
        .all()
    )
    clusters: dict[tuple[object, object, str], list[PhotographySession]] = {}
    for row in rows:
        clusters.setdefault(_duplicate_key(row), []).append(row)

    doomed: list[str] = []
    for members in clusters.values():
        if len(members) < 2:
            continue
        keep = next((row for row in members if row.ical_uid), members[0])
        doomed.extend(row.id for row in members if row is not keep)

    if doomed and not dry_run:
        await session.execute(delete(PhotographySession).where(PhotographySession.id.in_(doomed)))
        await session.commit()
    logger.info("session_duplicates_cleanup", extra={"count": len(doomed), "dry_run": dry_run})
    return doomed
