"""FastAPI app entry."""

from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from sessiongate.adapters.openai_compat.router import router as openai_router
from sessiongate.adapters.openai_compat.upstream import close_upstream_async_client
from sessiongate.config.settings import settings
from sessiongate.init_config import validate_startup_config
from sessiongate.util.logger import logger

app = FastAPI(title=settings.app_name)
app.include_router(openai_router, prefix="/v1")


@app.middleware("http")
async def internal_error_middleware(request: Request, call_next):
    try:
        return await call_next(request)
    except Exception:  # pragma: no cover - fail-safe
        logger.exception("gateway unhandled exception path=%s", request.url.path)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})


@app.get("/health")
def health() -> dict:
    logger.debug("health check")
    return {"status": "healthy"}


@app.on_event("startup")
async def startup_checks() -> None:
    try:
        validate_startup_config()
    except Exception as exc:
        logger.error("startup config validation failed: %s", exc)
        raise


@app.on_event("shutdown")
async def shutdown_cleanup() -> None:
    await close_upstream_async_client()
