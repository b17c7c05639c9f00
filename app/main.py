# =====================================================
# FILE: app/main.py
# FastAPI application for the workflow approval service
# =====================================================

from contextlib import asynccontextmanager
import asyncio
import logging

from fastapi import FastAPI

from app.core.config import settings
from app.core.database import init_db, test_connection
from app.core.exceptions import register_exception_handlers
from app.middleware.audit_middleware import AuditLoggingMiddleware
from app.services.scheduler_service import setup_scheduler
from app.api.api_v1 import approvals
from app.api.api_v1.workflow.router import (
    events_router,
    instances_router,
    maintenance_router,
    templates_router,
)

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()

    scheduler_task = None
    scheduler = None
    if settings.SCHEDULER_ENABLED:
        scheduler = setup_scheduler()
        scheduler_task = asyncio.create_task(scheduler.start())
    else:
        logger.info("Background scheduler disabled")

    yield

    if scheduler is not None:
        scheduler.stop()
        scheduler_task.cancel()
        try:
            await scheduler_task
        except asyncio.CancelledError:
            pass


app = FastAPI(
    title=settings.APP_NAME,
    description="Configurable approval workflows for inventory documents",
    version="1.0.0",
    lifespan=lifespan,
)

register_exception_handlers(app)
app.add_middleware(AuditLoggingMiddleware)

app.include_router(templates_router)
app.include_router(events_router)
app.include_router(instances_router)
app.include_router(maintenance_router)
app.include_router(approvals.router)


@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "app": settings.APP_NAME,
        "database": "connected" if test_connection() else "unavailable",
    }
