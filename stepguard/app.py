from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from stepguard.api.error_handling import register_exception_handlers
from stepguard.api.routes import router
from stepguard.api.schemas import HealthResponse
from stepguard.config import Settings, get_settings
from stepguard.logging import get_logger, set_correlation_id
from stepguard.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


def _allowed_origins(settings: Settings) -> List[str]:
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


def create_app(
    settings: Optional[Settings] = None, runtime: Optional[Runtime] = None
) -> FastAPI:
    """Build the HTTP app around an explicitly constructed runtime.

    The runtime is created lazily at startup when not supplied, so importing
    this module never opens connections.
    """
    settings = settings or (runtime.settings if runtime else get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "runtime", None) is None:
            app.state.runtime = Runtime(settings)
        current: Runtime = app.state.runtime
        await current.start()
        logger.info("security_event_log_started_on_startup")
        yield
        try:
            await current.close()
            logger.info("runtime_cleanup_complete")
        except Exception as exc:
            logger.error("shutdown_failed", error=str(exc))

    app = FastAPI(title="StepGuard", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(settings),
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID", "API-Version", "Retry-After"],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Take X-Request-ID from the client or generate one, and echo it back."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        response.headers.setdefault("API-Version", __version__)
        if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
            response.headers.setdefault(
                "Cache-Control", "no-store, no-cache, must-revalidate, private"
            )
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz")
    async def health(request: Request) -> HealthResponse:
        """Report Redis reachability and audit queue pressure."""
        current: Runtime = request.app.state.runtime
        redis_status = "not_configured"
        healthy = True
        if current.cache is not None:
            try:
                await asyncio.wait_for(current.cache.ping(), HEALTH_CHECK_TIMEOUT_SECONDS)
                redis_status = "healthy"
            except asyncio.TimeoutError:
                logger.error("health_check_timeout", component="redis")
                redis_status, healthy = "unhealthy", False
            except Exception as exc:
                logger.error("health_check_redis_failed", error=str(exc))
                redis_status, healthy = "unhealthy", False
        return HealthResponse(
            status="healthy" if healthy else "unhealthy",
            redis=redis_status,
            audit_queue_depth=current.audit.depth,
            audit_events_dropped=current.audit.dropped,
            version=__version__,
        )

    return app


app = create_app()
