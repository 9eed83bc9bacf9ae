from apscheduler.schedulers.background import BackgroundScheduler

from filedesk.config import RECONCILE_INTERVAL_MINUTES
from filedesk.core.exceptions import FileDeskError
from filedesk.db import ensure_connection


def start_reconciler(orchestrator, logger, interval_minutes: int = RECONCILE_INTERVAL_MINUTES):
    scheduler = BackgroundScheduler()

    def _job():
        if not ensure_connection():
            logger.warning("event=reconcile_skipped reason=database_unreachable")
            return
        try:
            reclaimed = orchestrator.reconcile_orphans()
            if reclaimed:
                logger.info("event=reconcile_done reclaimed=%s", reclaimed)
        except FileDeskError as e:
            logger.error("event=reconcile_failed code=%s detail=%s", e.code, e.message)
        except Exception as e:
            # Keep the scheduler alive; the next run retries.
            logger.error("Unexpected error in reconcile job: %s", str(e))

    scheduler.add_job(_job, "interval", minutes=interval_minutes, id="reconcile_orphans", coalesce=True)
    scheduler.start()
    return scheduler
