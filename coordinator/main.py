import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from coordinator.settings import settings
from coordinator.bootstrap import Services, build_services
from coordinator.domain.errors import (
    AuthenticationError, ValidationError, RateLimitExceeded, JobNotFoundError, TransientError,
)
from coordinator.api.v1.webhooks import router as webhooks_router
from coordinator.api.v1.scheduler import router as scheduler_router
from coordinator.api.v1.jobs import router as jobs_router
from coordinator.api.v1.workers import router as workers_router
from coordinator.api.v1.admin import router as admin_router
from coordinator.api.v1.metrics import router as metrics_router

logger = logging.getLogger(__name__)


def create_app(services: Optional[Services] = None) -> FastAPI:
    """
    Builds the ASGI app. With `services` injected (tests) the app uses them as
    given and leaves their lifecycle to the caller.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = services is None
        svc = services or build_services(settings)
        app.state.services = svc

        maintenance = None
        if svc.settings.RUN_BACKGROUND_WORKER:
            from coordinator.scheduler.service import MaintenanceService

            # 1. Job runtime on every instance
            await svc.runtime.start()
            # 2. Maintenance, leader-elected
            maintenance = MaintenanceService(svc, interval=svc.settings.MAINTENANCE_INTERVAL_SECONDS)
            await maintenance.start()

        yield

        # Shutdown
        if maintenance:
            await maintenance.stop()
        if owned:
            await svc.close()
        else:
            await svc.runtime.stop()

    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    app = FastAPI(
        title=settings.PROJECT_NAME,
        lifespan=lifespan
    )
    if services is not None:
        # Available before lifespan runs (e.g. clients that skip startup)
        app.state.services = services

    app.include_router(webhooks_router, prefix="/api/v1/webhooks", tags=["webhooks"])
    app.include_router(scheduler_router, prefix="/api/v1/scheduler", tags=["scheduler"])
    app.include_router(jobs_router, prefix="/api/v1/jobs", tags=["jobs"])
    app.include_router(workers_router, prefix="/api/v1/workers", tags=["workers"])
    app.include_router(admin_router, prefix="/api/v1/admin", tags=["admin"])
    app.include_router(metrics_router, tags=["metrics"])

    @app.exception_handler(AuthenticationError)
    async def authentication_error_handler(request: Request, exc: AuthenticationError):
        return JSONResponse(status_code=401, content={"detail": str(exc)})

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(JobNotFoundError)
    async def not_found_handler(request: Request, exc: JobNotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(TransientError)
    async def transient_error_handler(request: Request, exc: TransientError):
        return JSONResponse(status_code=503, content={"detail": str(exc)}, headers={"Retry-After": "30"})

    @app.exception_handler(RateLimitExceeded)
    async def rate_limited_handler(request: Request, exc: RateLimitExceeded):
        return JSONResponse(
            status_code=429,
            content={"detail": str(exc)},
            headers={
                "Retry-After": str(exc.retry_after_seconds),
                "X-Rate-Limit-Reset": str(int(exc.reset_at.timestamp())) if exc.reset_at else "",
                "X-Rate-Limit-Remaining": "0",
            },
        )

    @app.get("/health")
    async def health(request: Request):
        svc: Services = request.app.state.services
        try:
            stats = await svc.queue.stats()
        except Exception as e:
            logger.error(f"Health check could not reach the store: {e}")
            return JSONResponse(status_code=503, content={"status": "degraded", "error": "store unavailable"})
        return {"status": "ok", "queues": stats["queues"], "dead_letter": stats["totals"]["dead_letter"]}

    return app


app = create_app()
