import logging
import time
import uuid
from typing import Awaitable, Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from studiocrm.core.logging_config import request_id_ctx_var

logger = logging.getLogger("studiocrm.request")

_MAX_INBOUND_ID_LEN = 128


def _inbound_request_id(request: Request) -> str | None:
    value = (request.headers.get("X-Request-ID") or "").strip()
    if not value or len(value) > _MAX_INBOUND_ID_LEN or not value.isprintable():
        return None
    return value


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        request_id = _inbound_request_id(request) or str(uuid.uuid4())
        token = request_id_ctx_var.set(request_id)
        start = time.time()
        request.state.request_id = request_id
        response: Response | None = None
        try:
            response = await call_next(request)
            return response
        finally:
            duration = time.time() - start
            if response is not None:
                response.headers["X-Request-ID"] = request_id
                logger.info(
                    "request",
                    extra={
                        "path": request.url.path,
                        "method": request.method,
                        "status_code": response.status_code,
                        "duration_ms": int(duration * 1000),
                    },
                )
            request_id_ctx_var.reset(token)
