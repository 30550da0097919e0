import asyncio
from collections.abc import Generator

import pytest
from sqlalchemy.ext import asyncio as sa_asyncio


_TRACKED_ENGINES: list[sa_asyncio.AsyncEngine] = []
_ORIGINAL_CREATE_ASYNC_ENGINE = sa_asyncio.create_async_engine


def _tracked_create_async_engine(*args, **kwargs):  # type: ignore[no-untyped-def]
    engine = _ORIGINAL_CREATE_ASYNC_ENGINE(*args, **kwargs)
    _TRACKED_ENGINES.append(engine)
    return engine


sa_asyncio.create_async_engine = _tracked_create_async_engine  # type: ignore[assignment]


@pytest.fixture(scope="module")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def _dispose_tracked_async_engines() -> Generator[None, None, None]:
    start_index = len(_TRACKED_ENGINES)
    yield
    pending = _TRACKED_ENGINES[start_index:]
    if not pending:
        return

    async def _dispose_all() -> None:
        for engine in pending:
            await engine.dispose()

    asyncio.run(_dispose_all())
    del _TRACKED_ENGINES[start_index:]


@pytest.fixture(autouse=True)
def _fast_calendar_fetch(monkeypatch: pytest.MonkeyPatch) -> None:
    from studiocrm.core.config import settings

    monkeypatch.setattr(settings, "ics_fetch_backoff_ms", 0)
    monkeypatch.setattr(settings, "default_cal_tz", "Europe/Vienna")
    monkeypatch.setattr(settings, "coupons_json", None)
    monkeypatch.setattr(settings, "coupons_95_only", None)
