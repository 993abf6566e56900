import logging
import sys
import time
import uuid

import structlog
from fastapi import Request
from starlette.responses import JSONResponse

_configured = False


def masking_processor(logger, method_name, event_dict):
    """Masks customer phone numbers in logs."""
    for key in ["phone", "customer_phone", "contact"]:
        if key in event_dict and event_dict[key]:
            val = str(event_dict[key])
            event_dict[key] = f"{val[:3]}***{val[-2:]}" if len(val) > 5 else "***"
    return event_dict


def setup_logging(level: int = logging.INFO) -> None:
    global _configured
    if _configured:
        return

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            masking_processor,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    _configured = True


logger = structlog.get_logger("detailos.http")


async def request_tracing_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    business_slug = request.headers.get("X-Business-Slug")

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        business_slug=business_slug,
        path=request.url.path,
        method=request.method,
        app="detailos",
    )

    start_time = time.perf_counter()
    try:
        response = await call_next(request)
        duration_ms = round((time.perf_counter() - start_time) * 1000, 2)

        logger.info("http_request", status=response.status_code, duration_ms=duration_ms)
        response.headers["X-Request-ID"] = request_id
        return response
    except Exception as exc:
        duration_ms = round((time.perf_counter() - start_time) * 1000, 2)
        logger.error("http_request_failed", error=str(exc), duration_ms=duration_ms)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal Server Error", "request_id": request_id},
        )
