import logging
from celery import shared_task
from django.db import DatabaseError

logger = logging.getLogger(__name__)


@shared_task(
    bind=True,
    max_retries=3,
    default_retry_delay=10,   # seconds; exponential backoff multiplies by 2^retry_count
    acks_late=True,           # ack after the work is done, so a crashed worker does not lose it
    reject_on_worker_lost=True,
)
def reconcile_dispatches(self):
    """
    Periodic reconciliation sweep (CELERY_BEAT_SCHEDULE).

    Delivers every due dispatch outbox message and closes runs a crash left
    in dispatching. Per-message retry bookkeeping lives on OutboxMessage;
    this task only retries itself when the database is unavailable:
    10s → 20s → 40s, then gives up until the next beat.
    """
    from pharmacy.orchestrator import FulfillmentOrchestrator
    from pharmacy.services import reconcile_pending_dispatches

    logger.info("[Celery][reconcile_dispatches] sweep started (attempt %d/%d)",
                self.request.retries + 1, self.max_retries + 1)

    try:
        counts = reconcile_pending_dispatches()
        counts['runs_finished'] = FulfillmentOrchestrator().finish_stalled_runs()
    except DatabaseError as exc:
        if self.request.retries < self.max_retries:
            countdown = self.default_retry_delay * (2 ** self.request.retries)
            logger.warning("[Celery] sweep failed, retrying in %ds: %s", countdown, exc)
            raise self.retry(exc=exc, countdown=countdown)
        logger.error("[Celery] sweep failed after %d retries, waiting for the next beat: %s",
                     self.max_retries, exc)
        raise

    logger.info("[Celery][reconcile_dispatches] %s", counts)
    return counts
