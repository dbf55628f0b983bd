# duet/services/scheduler.py
import os
import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.exc import SQLAlchemyError

from duet.database import async_session_maker
from duet.services.security import get_security_guard
from duet.services.sessions import get_token_service
from duet.settings.config import settings
try:
    from zoneinfo import ZoneInfo
except ImportError:
    ZoneInfo = None

scheduler: AsyncIOScheduler | None = None
logger = logging.getLogger(__name__)

DEFAULT_CLEANUP_CRON = "*/30 * * * *"


def _pick_tz(name: str | None):
    if ZoneInfo and name:
        try:
            return ZoneInfo(name)
        except (KeyError, ValueError):
            logger.warning("Unknown timezone %r; using UTC", name)
    return None


def start_scheduler():
    global scheduler
    if scheduler or not settings.SCHEDULER_ENABLED:
        return
    tz_name = os.getenv("APP_TZ") or os.getenv("TZ") or "UTC"
    tz = _pick_tz(tz_name)
    scheduler = AsyncIOScheduler(timezone=tz) if tz else AsyncIOScheduler()

    cron_expr = (settings.SESSION_CLEANUP_CRON or "").strip() or DEFAULT_CLEANUP_CRON
    try:
        trigger = CronTrigger.from_crontab(cron_expr, timezone=tz)
        logger.info("Session cleanup using SESSION_CLEANUP_CRON='%s' tz=%s", cron_expr, tz_name)
    except ValueError:
        trigger = CronTrigger.from_crontab(DEFAULT_CLEANUP_CRON, timezone=tz)
        logger.warning("Invalid SESSION_CLEANUP_CRON; falling back to '%s'", DEFAULT_CLEANUP_CRON)

    scheduler.add_job(job_cleanup_sessions, trigger, id="cleanup_sessions", replace_existing=True)
    scheduler.start()
    logger.info("Maintenance scheduler started")


def stop_scheduler():
    global scheduler
    if scheduler:
        scheduler.shutdown(wait=False)
        scheduler = None


async def job_cleanup_sessions() -> dict:
    """Delete expired refresh sessions and drop idle lockout/rate-limit keys."""
    removed_sessions = 0
    async with async_session_maker() as db:
        try:
            removed_sessions = await get_token_service().cleanup_expired(db)
        except SQLAlchemyError:
            await db.rollback()
            logger.exception("Expired session cleanup failed")
    pruned = get_security_guard().prune()
    if removed_sessions or pruned:
        logger.info("Cleanup removed %d expired sessions and %d idle guard keys", removed_sessions, pruned)
    return {"sessions": removed_sessions, "guard_keys": pruned}
