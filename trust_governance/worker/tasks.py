"""
Celery Tasks for background governance work
"""
import logging
from typing import Optional
from celery import shared_task
from trust_governance.db.database import SessionLocal

logger = logging.getLogger(__name__)


def get_db_session():
    """Get database session for tasks"""
    return SessionLocal()


@shared_task(bind=True, max_retries=3, default_retry_delay=60)
def drain_trust_queue(self, limit: Optional[int] = None):
    """
    Drain one bounded batch of trust recalculation jobs.

    Jobs are claimed with a lease, so overlapping runs never process the
    same job twice. Jobs whose signals timed out go back to pending.
    """
    from trust_governance.services.recalc_queue_service import recalc_queue_service

    db = get_db_session()
    try:
        result = recalc_queue_service.drain(db, limit=limit)
        logger.info(f"Trust queue drain task completed: {result}")
        return result
    except Exception as e:
        logger.error(f"Trust queue drain failed: {e}")
        raise self.retry(exc=e)
    finally:
        db.close()


@shared_task(bind=True, max_retries=3, default_retry_delay=60)
def sweep_jury_deadlines(self):
    """Resolve every active jury case whose deadline has passed"""
    from trust_governance.services.jury_service import jury_service

    db = get_db_session()
    try:
        result = jury_service.sweep_expired(db)
        logger.info(f"Jury sweep completed: {result}")
        return result
    except Exception as e:
        logger.error(f"Jury sweep failed: {e}")
        raise self.retry(exc=e)
    finally:
        db.close()


@shared_task(bind=True, max_retries=2, default_retry_delay=30)
def recalc_content(self, content_id: str, reason: str = "signal_change"):
    """Queue a recalculation for one content unit from an upstream event"""
    from trust_governance.services.recalc_queue_service import recalc_queue_service

    db = get_db_session()
    try:
        job, created = recalc_queue_service.enqueue(db, content_id, reason)
        return {"job_id": job.id, "created": created}
    except Exception as e:
        logger.error(f"Recalc enqueue failed for {content_id}: {e}")
        raise self.retry(exc=e)
    finally:
        db.close()
