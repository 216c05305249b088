"""FastAPI application entry point."""

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Callable, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from starlette.middleware.base import BaseHTTPMiddleware

from inventory_engine.api.routes import api_router
from inventory_engine.core.config import settings
from inventory_engine.core.rate_limit import limiter
from inventory_engine.db.base import Base
from inventory_engine.db.session import SessionLocal, engine as db_engine
from inventory_engine.services.change_listener import RedisChangeSource
from inventory_engine.services.container import InventoryEngine, build_inventory_engine
from inventory_engine.services.exceptions import FetchError

# Configure logging: human-readable in debug, JSON lines in production
root_logger = logging.getLogger()
root_logger.setLevel(getattr(logging, settings.log_level))
root_logger.handlers.clear()

if settings.debug:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
else:
    import json as _json
    import sys

    class JSONFormatter(logging.Formatter):
        def format(self, record):
            return _json.dumps({
                "ts": self.formatTime(record, self.datefmt),
                "level": record.levelname,
                "logger": record.name,
                "msg": record.getMessage(),
                "module": record.module,
                "line": record.lineno,
            })

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())

root_logger.addHandler(handler)
logger = logging.getLogger(__name__)
request_logger = logging.getLogger("requests")

EngineFactory = Callable[[], InventoryEngine]


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for logging all HTTP requests and responses."""

    async def dispatch(self, request: Request, call_next):
        import time

        # Skip logging for health checks and docs
        if request.url.path in ["/health", "/health/ready", "/docs", "/openapi.json"]:
            return await call_next(request)

        start_time = time.time()
        client_ip = request.client.host if request.client else "unknown"
        try:
            response = await call_next(request)
        except Exception as e:
            request_logger.error(
                f"Error: {request.method} {request.url.path} - "
                f"Exception: {str(e)} - Time: {time.time() - start_time:.3f}s - Client: {client_ip}"
            )
            raise

        log_level = logging.WARNING if response.status_code >= 400 else logging.INFO
        request_logger.log(
            log_level,
            f"{request.method} {request.url.path} - Status: {response.status_code} - "
            f"Time: {time.time() - start_time:.3f}s - Client: {client_ip}",
        )
        return response


def _default_engine() -> InventoryEngine:
    if settings.database_url.startswith("sqlite"):
        # SQLite does not create missing parent directories
        db_path = settings.database_url.split("///", 1)[-1]
        if db_path and db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        Base.metadata.create_all(bind=db_engine)
        logger.info("Database tables created (SQLite mode)")
    return build_inventory_engine(settings, SessionLocal)


async def _stop(task: Optional["asyncio.Task"]) -> None:
    if task is None:
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


def create_app(engine_factory: Optional[EngineFactory] = None) -> FastAPI:
    """Build the application. Tests pass their own engine factory."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting inventory engine")
        inventory = (engine_factory or _default_engine)()
        app.state.inventory_engine = inventory

        listener_task = None
        if inventory.settings.redis_url:
            source = RedisChangeSource(inventory.settings.redis_url, inventory.settings.change_channel_prefix)
            listener_task = asyncio.create_task(inventory.listener.run(source.messages()))
            logger.info("Change-notification listener started")
        else:
            logger.info("REDIS_URL not set; change-notification listener disabled")

        yield

        await _stop(listener_task)
        inventory.listener.close()
        # Let pending movement and sync-result writes land
        await inventory.deductions.wait_for_background()
        logger.info("Shutting down inventory engine")

    app = FastAPI(
        title="Inventory Availability & Deduction Engine",
        description="Recipe-driven product availability and batched stock deduction",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )

    # Rate limiting setup
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    @app.exception_handler(FetchError)
    async def fetch_error_handler(request: Request, exc: FetchError):
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(
            status_code=503,
            content={"detail": "Inventory data is temporarily unavailable", "error": str(exc)},
        )

    app.add_middleware(RequestLoggingMiddleware)

    # CORS middleware - added last so it runs first (Starlette LIFO order)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Accept", "Origin", "X-Requested-With", "X-Actor-Id"],
        max_age=600,  # Cache preflight for 10 minutes
    )

    app.include_router(api_router, prefix=settings.api_v1_prefix)

    @app.get("/health")
    def health_check():
        """Basic liveness check endpoint."""
        return {"status": "healthy", "version": "1.0.0"}

    @app.get("/health/ready")
    async def readiness_check(request: Request):
        """Readiness probe with database and Redis connectivity checks."""
        inventory: InventoryEngine = request.app.state.inventory_engine
        checks = {"database": "unknown", "redis": "unknown"}

        try:
            await asyncio.to_thread(inventory.repository.ping)
            checks["database"] = "healthy"
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            checks["database"] = "unhealthy"

        redis_url = inventory.settings.redis_url
        if not redis_url:
            checks["redis"] = "not configured"
        else:
            try:
                source = RedisChangeSource(redis_url, inventory.settings.change_channel_prefix)
                checks["redis"] = "healthy" if await source.ping() else "unhealthy"
            except Exception as e:
                logger.error(f"Redis health check failed: {e}")
                checks["redis"] = "unhealthy"

        ready = checks["database"] == "healthy" and checks["redis"] in ("healthy", "not configured")
        return JSONResponse(
            status_code=200 if ready else 503,
            content={"status": "ready" if ready else "not ready", "checks": checks},
        )

    return app


app = create_app()
