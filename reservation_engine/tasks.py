import structlog
from celery import shared_task
from django.db import DatabaseError

from .settlement import expire_stale_holds

logger = structlog.get_logger(__name__)


@shared_task(bind=True, max_retries=3, default_retry_delay=30)
def expire_holds(self):
    """Periodic sweep releasing unpaid holds; scheduled by celery beat."""
    try:
        expired = expire_stale_holds()
    except DatabaseError as exc:
        logger.warning("sweep.failed", error=str(exc), retries=self.request.retries)
        raise self.retry(exc=exc)
    logger.info("sweep.completed", expired=expired)
    return expired
