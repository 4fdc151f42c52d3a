import os
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
import structlog

from .config import settings
from .db import Base, engine
from .logging import setup_logging, RequestIdMiddleware
from .services.errors import PipelineError
from .routes.geofence import router as geofence_router
from .routes.time_entries import router as time_entries_router
from .routes.reports import router as reports_router


logger = structlog.get_logger(__name__)


def create_app() -> FastAPI:
    setup_logging()
    app = FastAPI(title=settings.app_name)

    # Middlewares
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit])
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    @app.exception_handler(PipelineError)
    async def _pipeline_error(request: Request, exc: PipelineError):
        if exc.status_code >= 500:
            logger.error("request_failed", code=exc.code, error=exc.message, path=request.url.path)
        else:
            logger.info("request_rejected", code=exc.code, error=exc.message, path=request.url.path)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    # Attendance data is per-user and changes constantly
    @app.middleware("http")
    async def no_store(request: Request, call_next):
        response = await call_next(request)
        if response.headers.get("content-type", "").startswith("application/json"):
            response.headers["Cache-Control"] = "no-store"
        return response

    # Routers
    app.include_router(geofence_router)
    app.include_router(time_entries_router)
    app.include_router(reports_router)

    @app.get("/healthz")
    def healthz():
        return {"ok": True}

    # Metrics
    Instrumentator().instrument(app).expose(app)

    @app.on_event("startup")
    def _startup():
        # Ensure local SQLite directory exists
        if settings.database_url.startswith("sqlite:///./"):
            os.makedirs("var", exist_ok=True)
        if settings.auto_create_db:
            from .models import models  # noqa: F401  register tables
            Base.metadata.create_all(bind=engine)
        logger.info("startup_complete", environment=settings.environment)

    return app


app = create_app()
