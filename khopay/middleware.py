"""
Request tracing for the payment API.

Every request gets a request_id (taken from X-Request-ID when the caller or
load balancer supplies one) bound into the structlog context, so webhook and
orchestrator events can be joined back to the HTTP request that caused them.
"""
import time
import uuid
from typing import Callable, Optional

from fastapi import Request, Response
from structlog.contextvars import bind_contextvars, clear_contextvars

from .logging_config import get_logger

logger = get_logger(__name__)

WEBHOOK_PREFIX = "/v1/webhooks/"


def _remote_addr(request: Request) -> Optional[str]:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


async def request_id_middleware(request: Request, call_next: Callable) -> Response:
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    path = request.url.path

    clear_contextvars()
    context = {"request_id": request_id, "http_method": request.method, "path": path}
    if path.startswith(WEBHOOK_PREFIX):
        # provider callbacks are the requests operators trace most often
        context["provider"] = path[len(WEBHOOK_PREFIX):].strip("/") or None
    bind_contextvars(**context)
    request.state.request_id = request_id

    started = time.perf_counter()
    logger.info("request_started", remote_addr=_remote_addr(request))
    try:
        response = await call_next(request)
    except Exception as exc:
        logger.error(
            "request_failed",
            exc_info=exc,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        raise
    else:
        logger.info(
            "request_completed",
            status_code=response.status_code,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        response.headers["X-Request-ID"] = request_id
        return response
    finally:
        clear_contextvars()
