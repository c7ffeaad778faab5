from __future__ import annotations

import time
import uuid
from typing import Any, Callable

from fastapi import Request, Response

from caption_localizer.utils.log import logger, set_request_id


def _new_request_id() -> str:
    return uuid.uuid4().hex


async def request_context_middleware(request: Request, call_next: Callable[[Request], Any]) -> Response:
    """
    Inject X-Request-ID if absent and bind it for every log line of the request.
    """
    rid = request.headers.get("x-request-id") or _new_request_id()
    set_request_id(rid)
    try:
        resp = await call_next(request)
        resp.headers.setdefault("x-request-id", rid)
        return resp
    finally:
        set_request_id(None)


async def log_requests(request: Request, call_next: Callable[[Request], Any]) -> Response:
    t0 = time.perf_counter()
    ip = request.client.host if request.client else "unknown"
    response = None
    try:
        response = await call_next(request)
        return response
    finally:
        logger.info(
            "http_done",
            ip=ip,
            method=request.method,
            path=request.url.path,
            status=getattr(response, "status_code", 500),
            duration_ms=(time.perf_counter() - t0) * 1000.0,
        )
