"""FastAPI application factory for Relay-Engine."""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from relay_engine.common.config import get_settings
from relay_engine.common.exceptions import RelayError
from relay_engine.common.logging import get_logger, setup_logging
from relay_engine.common.schemas import ErrorResponse, HealthResponse

logger = get_logger("app")

_STATUS_BY_CODE = {
    "NOT_FOUND": 404,
    "WEBHOOK_NOT_FOUND": 404,
    "VALIDATION": 422,
    "CONFIGURATION": 422,
    "WEBHOOK_INACTIVE": 409,
    "AUTOMATION_INACTIVE": 409,
    "EXECUTION_STATE": 409,
    "PERSISTENCE": 503,
}


def create_app() -> FastAPI:
    settings = get_settings()
    setup_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        from relay_engine.deps import get_db, get_execution_engine, get_webhook_dispatcher
        db = get_db()
        await db.init()
        await db.create_all()
        logger.info("Relay-Engine %s started", settings.api_version)
        yield
        # Shutdown: let live runs record their state before the DB goes away
        await get_execution_engine().shutdown()
        await get_webhook_dispatcher().close()
        await db.close()

    app = FastAPI(
        title=settings.api_title,
        version=settings.api_version,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError):
        status_code = _STATUS_BY_CODE.get(exc.code, 500)
        if status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        body = ErrorResponse(error=exc.__class__.__name__, code=exc.code, detail=exc.message)
        return JSONResponse(status_code=status_code, content=body.model_dump())

    @app.get("/health", response_model=HealthResponse)
    async def health():
        return HealthResponse(version=settings.api_version)

    # Mount routers
    from relay_engine.webhooks.router import router as webhook_router
    from relay_engine.automations.router import router as automation_router
    from relay_engine.executions.router import router as execution_router

    prefix = settings.api_prefix
    app.include_router(webhook_router, prefix=prefix, tags=["webhooks"])
    app.include_router(automation_router, prefix=prefix, tags=["automations"])
    app.include_router(execution_router, prefix=prefix, tags=["executions"])

    return app
