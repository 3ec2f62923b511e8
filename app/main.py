"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api import webhooks
from app.config import get_settings
from app.database import async_session, init_db
from app.services.usage_monitor import UsageThresholdMonitor
from app.services.webhook_queue import WebhookQueue

settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    app.state.webhook_queue.start()
    logger.info(f"{settings.app_name} started (env={settings.app_env})")

    yield

    # Let queued threshold checks reach the queue before it stops
    await app.state.usage_monitor.drain()
    await app.state.webhook_queue.stop()


app = FastAPI(
    title=settings.app_name,
    version="0.1.0",
    description="Usage threshold notifications delivered as signed webhooks",
    lifespan=lifespan,
)

# The metering collaborator reaches the monitor through app.state.usage_monitor
app.state.webhook_queue = WebhookQueue(async_session)
app.state.usage_monitor = UsageThresholdMonitor(async_session, app.state.webhook_queue)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhooks.router, prefix="/api/v1")


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "app": settings.app_name,
        "webhook_queue": app.state.webhook_queue.get_status(),
    }
