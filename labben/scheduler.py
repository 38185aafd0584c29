"""Background scheduler for expired token cleanup."""

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from labben.config import settings
from labben.database import SessionLocal
from labben.logging_config import get_logger
from labben.services.token_service import cleanup_expired_tokens

logger = get_logger(__name__)

scheduler = BackgroundScheduler()


def cleanup_job(session_factory=SessionLocal) -> int:
    """Delete expired download/preview tokens. Errors are logged, never raised."""
    db = session_factory()
    try:
        deleted = cleanup_expired_tokens(db)
        if deleted:
            logger.info("expired_tokens_cleaned", deleted=deleted, trigger="scheduled")
        return deleted
    except Exception as e:
        logger.error("token_cleanup_failed", error=str(e))
        return 0
    finally:
        db.close()


def start_scheduler() -> None:
    """Start the background scheduler."""
    scheduler.add_job(
        cleanup_job,
        trigger=IntervalTrigger(hours=settings.cleanup_interval_hours),
        id="cleanup_expired_tokens",
        replace_existing=True,
    )
    scheduler.start()
    logger.info("scheduler_started", cleanup_interval_hours=settings.cleanup_interval_hours)


def shutdown_scheduler() -> None:
    """Shutdown the scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown()
        logger.info("scheduler_stopped")
