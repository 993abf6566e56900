from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

import redis

from .api import router
from .config import settings
from .core.observability import request_tracing_middleware, setup_logging
from .db import Base, SessionLocal, engine


def _read_app_version() -> str:
    version_file = Path(__file__).resolve().parents[1] / "VERSION"
    try:
        value = version_file.read_text(encoding="utf-8").strip()
        return value or "0.1.0"
    except Exception:
        return "0.1.0"


if settings.DATABASE_URL.startswith("sqlite") or bool(settings.DB_AUTO_CREATE_ALL):
    Base.metadata.create_all(bind=engine)
setup_logging()

app = FastAPI(
    title="DetailOS",
    description="Booking slots and opportunity notifications for mobile detailing businesses",
    version=_read_app_version(),
)
app.state.session_local = SessionLocal


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    if bool(settings.SECURITY_HEADERS_ENABLED):
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        response.headers.setdefault("Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'")
        response.headers.setdefault("Cache-Control", "no-store")
    return response


@app.middleware("http")
async def tracing_middleware(request: Request, call_next):
    return await request_tracing_middleware(request, call_next)


@app.get("/ping")
def ping():
    return {"ok": True}


@app.get("/health")
def health():
    checks = {"db": "ok", "redis": "skipped"}
    healthy = True

    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
    except Exception:
        checks["db"] = "error"
        healthy = False

    redis_url = (settings.REDIS_URL or "").strip()
    if redis_url:
        try:
            redis.from_url(redis_url, decode_responses=True).ping()
            checks["redis"] = "ok"
        except Exception:
            checks["redis"] = "error"
            healthy = False

    if healthy:
        return {"status": "ok", "checks": checks}
    return JSONResponse(status_code=503, content={"status": "degraded", "checks": checks})


app.include_router(router)
