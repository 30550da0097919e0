from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from studiocrm.api.v1 import api_router
from studiocrm.core.config import settings
from studiocrm.core.logging_config import configure_logging
from studiocrm.middleware import RequestLoggingMiddleware
from studiocrm.schemas.error import ErrorResponse
from studiocrm.services.calendar_import import CalendarFetchError, CalendarImportError
from studiocrm.services.coupons import CouponService


def get_application() -> FastAPI:
    configure_logging(settings.log_json)
    tags_metadata = [
        {"name": "calendar", "description": "iCalendar imports into photography sessions"},
        {"name": "coupons", "description": "Coupon resolution and validation"},
    ]
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        openapi_tags=tags_metadata,
        swagger_ui_parameters={"displayRequestDuration": True},
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=settings.cors_allow_methods,
        allow_headers=settings.cors_allow_headers,
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.include_router(api_router, prefix="/api/v1")
    app.state.coupon_service = CouponService()

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        payload = ErrorResponse(detail=exc.detail, code=None)
        return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(payload.model_dump()))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = jsonable_encoder(exc.errors())
        payload = ErrorResponse(detail=errors, code="validation_error")
        return JSONResponse(status_code=422, content=payload.model_dump())

    @app.exception_handler(CalendarImportError)
    async def calendar_import_exception_handler(request: Request, exc: CalendarImportError):
        status_code = 422
        if isinstance(exc, CalendarFetchError):
            status_code = 400 if exc.hint == "invalid_url" else 502
        payload = ErrorResponse(detail=str(exc), code=exc.code)
        return JSONResponse(status_code=status_code, content=payload.model_dump())

    return app


app = get_application()
