from fastapi import APIRouter

from studiocrm.api.v1 import calendar
from studiocrm.api.v1 import coupons
from studiocrm.core.config import settings

api_router = APIRouter()

api_router.include_router(calendar.router)
api_router.include_router(coupons.router)


@api_router.get("/health", tags=["health"])
def healthcheck() -> dict[str, str]:
    return {"status": "ok", "version": settings.app_version}
