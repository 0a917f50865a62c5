"""
Main entrypoint: runs the APScheduler worker (cleanup, morning briefing,
aligned auto-sync) in one process.

FastAPI runs separately under uvicorn.

Usage:
    python -m omnisync              # starts the scheduler worker
    python -m omnisync cleanup      # one retention sweep, then exit
    uvicorn omnisync.api.main:app --host 0.0.0.0 --port 8000  # starts API
"""
import asyncio
import logging
import sys

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


def _run_cleanup() -> None:
    from omnisync.scheduler.jobs import run_cleanup
    from omnisync.services import get_services

    services = get_services()
    counts = run_cleanup(services.engine, services.gate.vault, services.settings)
    logger.info("Cleanup finished: %s", counts)


async def _run_worker() -> None:
    from omnisync.scheduler.jobs import build_scheduler
    from omnisync.services import get_services

    services = get_services()
    settings = services.settings

    scheduler = build_scheduler(services)
    scheduler.start()
    logger.info(
        "Scheduler started (cleanup %02d:00 UTC, briefing %02d:00 UTC, auto-sync every %d min)",
        settings.cleanup_hour,
        settings.briefing_hour,
        settings.auto_sync_interval_minutes,
    )

    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Shutting down...")
    finally:
        scheduler.shutdown()
        await services.runner.client.aclose()
        logger.info("Goodbye.")


if __name__ == "__main__":
    if len(sys.argv) > 1 and sys.argv[1] == "cleanup":
        _run_cleanup()
    else:
        asyncio.run(_run_worker())
