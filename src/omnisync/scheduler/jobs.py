"""
APScheduler jobs.

  cleanup         daily at cleanup_hour: retention sweep over synced records,
                  briefings, vault entries and finished sync jobs; stuck
                  jobs are reaped to ``error``
  morning_briefing
                  daily at briefing_hour: regenerate today's briefing for
                  every user with a connected provider
  auto_sync       every auto_sync_interval_minutes on the wall clock
                  (minute="*/10"), never relative to process start

Job bodies log failures and return; the next tick retries.
"""
import logging
from datetime import datetime, timedelta
from typing import Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlmodel import Session, select

from omnisync.config import Settings, get_settings
from omnisync.db.store import RecordStore
from omnisync.dlp.vault import PiiVault
from omnisync.models.briefing import Briefing
from omnisync.models.connection import CALENDAR, MAIL, STORAGE
from omnisync.models.sync import ERROR, TERMINAL_STATES, SyncJob
from omnisync.timeutil import utcnow

logger = logging.getLogger(__name__)

STUCK_JOB_MESSAGE = "Reaped by cleanup: job did not finish within the stuck-job threshold"

RETENTION_COLUMNS = {
    MAIL: "received_at",
    CALENDAR: "end_time",
    STORAGE: "modified_at",
}


def build_scheduler(services) -> AsyncIOScheduler:
    """
    Create and configure the APScheduler.

    Args:
        services: omnisync.services.Services bundle.

    Returns:
        Configured AsyncIOScheduler (not yet started).
    """
    settings = services.settings
    scheduler = AsyncIOScheduler(timezone="UTC")

    scheduler.add_job(
        _cleanup,
        trigger="cron",
        hour=settings.cleanup_hour,
        minute=0,
        id="cleanup",
        replace_existing=True,
        kwargs={"services": services},
    )
    scheduler.add_job(
        _morning_briefing,
        trigger="cron",
        hour=settings.briefing_hour,
        minute=0,
        id="morning_briefing",
        replace_existing=True,
        kwargs={"services": services},
    )
    scheduler.add_job(
        _auto_sync,
        trigger="cron",
        minute=f"*/{settings.auto_sync_interval_minutes}",
        id="auto_sync",
        replace_existing=True,
        kwargs={"services": services},
    )

    return scheduler


def run_cleanup(
    engine,
    vault: PiiVault,
    settings: Optional[Settings] = None,
    now: Optional[datetime] = None,
) -> Dict[str, int]:
    """
    Delete data past retention and reap stuck jobs.

    Returns:
        Deleted/reaped counts per category.
    """
    settings = settings or get_settings()
    now = now or utcnow()
    data_cutoff = now - timedelta(days=settings.data_retention_days)
    job_cutoff = now - timedelta(days=settings.sync_job_retention_days)
    stuck_cutoff = now - timedelta(hours=settings.stuck_job_threshold_hours)

    store = RecordStore(engine)
    counts = {
        provider: store.delete_older_than(provider, column, data_cutoff)
        for provider, column in RETENTION_COLUMNS.items()
    }
    counts["vault_entries"] = vault.delete_older_than(data_cutoff)

    with Session(engine) as s:
        old_briefings = s.exec(
            select(Briefing).where(Briefing.briefing_date < data_cutoff.date())
        ).all()
        for row in old_briefings:
            s.delete(row)
        counts["briefings"] = len(old_briefings)

        stuck = s.exec(
            select(SyncJob).where(
                SyncJob.status.not_in(TERMINAL_STATES),
                SyncJob.started_at < stuck_cutoff,
            )
        ).all()
        for job in stuck:
            job.status = ERROR
            job.error_message = STUCK_JOB_MESSAGE
            job.error_retryable = True
            job.completed_at = now
            job.lease_owner = None
            job.lease_expires_at = None
            s.add(job)
        counts["stuck_jobs"] = len(stuck)

        finished = s.exec(
            select(SyncJob).where(
                SyncJob.status.in_(TERMINAL_STATES),
                SyncJob.completed_at < job_cutoff,
            )
        ).all()
        for job in finished:
            s.delete(job)
        counts["sync_jobs"] = len(finished)
        s.commit()

    logger.info("Cleanup done: %s", counts)
    return counts


async def _cleanup(services) -> None:
    try:
        run_cleanup(services.engine, services.gate.vault, services.settings)
    except Exception as exc:
        logger.error("Cleanup failed: %s", exc)


async def _morning_briefing(services) -> None:
    """Regenerate today's briefing for every connected user."""
    user_ids = services.briefings.list_briefing_user_ids()
    logger.info("Morning briefing for %d user(s)", len(user_ids))
    for user_id in user_ids:
        try:
            await services.briefings.generate(user_id, trigger="scheduled")
        except Exception as exc:
            logger.error("Morning briefing for %s failed: %s", user_id, exc)


async def _auto_sync(services) -> None:
    """Wall-clock tick: one auto-sync per connected user."""
    for user_id in services.briefings.list_briefing_user_ids():
        try:
            orchestrator = services.orchestrator_for(user_id)
            orchestrator.refresh_connections()
            await orchestrator.auto_sync()
        except Exception as exc:
            logger.error("Auto-sync for %s failed: %s", user_id, exc)
