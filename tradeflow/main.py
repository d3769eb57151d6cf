from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .api import router
from .config import get_settings
from .core.errors import TradeflowError, ValidationError
from .core.logging_config import configure_logging
from .db.session import init_db
from .runtime import Runtime, build_runtime
from .workers import WorkerManager

load_dotenv()

logger = structlog.get_logger(__name__)


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """Build the API; a prebuilt ``runtime`` skips database and worker startup."""
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if runtime is not None:
            app.state.runtime = runtime
            yield
            return

        configure_logging(settings.log_level, settings.log_json)
        logger.info("Starting tradeflow API", env=settings.environment)
        db = init_db(settings.database_url, echo=settings.database_echo)
        await db.create_tables()

        app.state.runtime = build_runtime(db)
        workers: Optional[WorkerManager] = None
        if settings.auto_start_workers:
            workers = WorkerManager(
                app.state.runtime.queue,
                app.state.runtime.supervisor,
                app.state.runtime.coordinator,
                count=settings.worker_count,
            )
            workers.start()
        app.state.runtime.scheduler.start()
        yield

        logger.info("Shutting down tradeflow API")
        app.state.runtime.scheduler.shutdown()
        if workers is not None:
            await workers.stop()
        await app.state.runtime.close()
        await db.close()

    app = FastAPI(title=settings.api_title, version=settings.api_version, lifespan=lifespan)
    if runtime is not None:
        app.state.runtime = runtime

    @app.exception_handler(TradeflowError)
    async def tradeflow_exception_handler(request: Request, exc: TradeflowError):
        logger.warning(
            "Application exception",
            code=exc.code,
            message=exc.message,
            status_code=exc.status_code,
            path=request.url.path,
        )
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        error = ValidationError(
            "Request validation failed.",
            details={"errors": json.loads(json.dumps(exc.errors(), default=str))},
        )
        return JSONResponse(status_code=error.status_code, content=error.to_dict())

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        logger.error(
            "Unhandled exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
        )
        return JSONResponse(
            status_code=500,
            content={
                "code": "internal_error",
                "message": "An unexpected error occurred",
                "details": {"type": type(exc).__name__} if settings.debug else {},
            },
        )

    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    app.include_router(router)
    return app


app = create_app()
