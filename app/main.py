import asyncio
from contextlib import asynccontextmanager

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from fastapi import FastAPI, Request
from loguru import logger

from app.api.sync import router as sync_router
from app.config.settings import settings
from app.core.logger import setup_logger
from app.db.session import init_db
from app.webhooks.garmin import router as garmin_webhook_router
from app.webhooks.reprocess import reprocess_tick

setup_logger(level=settings.log_level, log_file=settings.log_file or None)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    """Create tables and run the webhook reprocessing scheduler for the app's lifetime."""
    init_db()

    scheduler = None
    if settings.enable_reprocess_scheduler:
        scheduler = BackgroundScheduler()
        scheduler.add_job(
            reprocess_tick,
            trigger=IntervalTrigger(minutes=settings.reprocess_interval_minutes),
            id="webhook_reprocess",
            name="Webhook Reprocessing Pass",
            replace_existing=True,
            max_instances=1,
        )
        scheduler.start()
        logger.info(f"[SCHEDULER] Webhook reprocessing every {settings.reprocess_interval_minutes} minutes")

    await asyncio.sleep(0)
    yield

    if scheduler is not None:
        scheduler.shutdown()
        logger.info("[SCHEDULER] Stopped webhook reprocessing scheduler")


app = FastAPI(title="ridesync", lifespan=lifespan)

app.include_router(garmin_webhook_router)
app.include_router(sync_router)

logger.info("FastAPI application initialized")


@app.get("/health")
def health():
    return {"status": "ok"}


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all HTTP requests."""
    logger.debug(f"Request: {request.method} {request.url.path}")
    response = await call_next(request)
    logger.debug(f"Response: {response.status_code} for {request.method} {request.url.path}")
    return response
