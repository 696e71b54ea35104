"""
Define application startup and shutdown procedures
"""

import re
from contextlib import asynccontextmanager
from fastapi import FastAPI

from api.retention.notifications import EmailNotifier, NotificationDispatcher
from api.retention.services import RetentionScheduler
from core.config import get_settings
from core.db import create_db_and_tables
from core.deps import get_blob_storage, get_key_wrapper, get_record_store
from core.logger import logger


def _log_setting(key: str, value):
    """Log a setting, masking sensitive values like passwords and secrets"""
    if any(marker in key for marker in ("PASSWORD", "SECRET", "MASTER_KEY")) and value is not None:
        logger.info("  %s: %s", key, "*****")
    elif "SQLALCHEMY_DATABASE_URI" in key and value is not None:
        # Mask password in database URI if present
        masked_value = re.sub(r"://(.*?):(.*?)@", r"://\1:*****@", value)
        logger.info("  %s: %s", key, masked_value)
    else:
        logger.info("  %s: %s", key, value)


def build_retention_scheduler(settings) -> tuple[RetentionScheduler, NotificationDispatcher]:
    """Wire the retention scheduler to the configured stores and notifier"""
    dispatcher = NotificationDispatcher(
        EmailNotifier(retention_days=settings.RETENTION_DAYS),
        max_attempts=settings.NOTIFY_MAX_ATTEMPTS,
        backoff_seconds=settings.NOTIFY_BACKOFF_SECONDS,
    )
    scheduler = RetentionScheduler(
        record_store=get_record_store(),
        blob_store=get_blob_storage(),
        dispatcher=dispatcher,
        retention_days=settings.RETENTION_DAYS,
        interval_seconds=settings.RETENTION_INTERVAL_SECONDS,
        max_workers=settings.RETENTION_MAX_WORKERS,
    )
    return scheduler, dispatcher


# Handle startup/shutdown tasks
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("In lifespan...starting up")

    settings = get_settings()

    logger.info("Configuration Settings:")
    computed_fields = {
        "SQLALCHEMY_DATABASE_URI": settings.SQLALCHEMY_DATABASE_URI,
        "FILE_MASTER_KEY": settings.FILE_MASTER_KEY,
    }
    for key, value in computed_fields.items():
        _log_setting(key, value)
    for key, value in vars(settings).items():
        _log_setting(key, value)

    # Fail fast on a missing or malformed master key
    get_key_wrapper()

    logger.info("Initializing database...")
    create_db_and_tables()

    scheduler, dispatcher = build_retention_scheduler(settings)
    app.state.retention_scheduler = scheduler
    if settings.RETENTION_ENABLED:
        scheduler.start()
    else:
        logger.info("Retention scheduler disabled")

    logger.info("In lifespan...yield")
    try:
        yield
    finally:
        # Shutdown
        logger.info("In lifespan...shutting down")
        await scheduler.stop()
        dispatcher.shutdown(wait=True)
