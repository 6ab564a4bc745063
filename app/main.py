"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from starlette.middleware.sessions import SessionMiddleware

from app.config import get_settings
from app.dependencies import build_upstream

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle hook."""
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    upstream = build_upstream(settings)
    app.state.upstream = upstream
    logger.info("Proxy manager stats: %s", upstream.proxy_stats().model_dump())
    yield
    queue = upstream.queue
    if queue.active_count or queue.pending_count:
        logger.info(
            "Shutting down with %d active / %d pending upstream requests",
            queue.active_count, queue.pending_count,
        )


app = FastAPI(
    title="openspot",
    version="0.1.0",
    lifespan=lifespan,
)

# Session middleware (signed cookie — stores the player state blob).
app.add_middleware(SessionMiddleware, secret_key=get_settings().secret_key)

# Routers
from app.routes_api import router as api_router  # noqa: E402

app.include_router(api_router)


@app.get("/health")
async def health():
    """Simple health-check endpoint."""
    upstream = getattr(app.state, "upstream", None)
    proxies = upstream.proxy_stats().total if upstream is not None else 0
    return JSONResponse({"status": "ok", "version": app.version, "proxies": proxies})
