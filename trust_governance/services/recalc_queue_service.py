"""
Recalculation Queue Service - Persisted job table feeding the trust score engine

Jobs move pending -> processing -> done. A drain claims a bounded batch by
stamping each job with its claim token and a lease; a job whose lease expired
(crashed worker) is claimable again. Jobs whose signal lookup timed out are
put back to pending instead of failing the batch.
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Dict, Any, List, Optional, Tuple
from sqlalchemy import and_, or_, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from trust_governance.config import settings
from trust_governance.db.models import TrustRecalcJob
from trust_governance.errors import ValidationFailed
from trust_governance.services.trust_score_service import trust_score_service

logger = logging.getLogger(__name__)

JOB_PENDING = "pending"
JOB_PROCESSING = "processing"
JOB_DONE = "done"
JOB_FAILED = "failed"


class RecalcQueueService:
    """Service for enqueueing and draining trust recalculation jobs"""

    def __init__(self, engine=None):
        self.engine = engine or trust_score_service

    def enqueue(
        self,
        db: Session,
        content_id: str,
        reason: str,
        now: Optional[datetime] = None
    ) -> Tuple[TrustRecalcJob, bool]:
        """
        Add a recalc job unless one is already pending for the content unit.

        Returns (job, created).
        """
        if not content_id:
            raise ValidationFailed("Missing required field: content_id")

        existing = self._pending_job(db, content_id)
        if existing:
            return existing, False

        job = TrustRecalcJob(
            content_id=content_id,
            reason=(reason or "unspecified")[:255],
            status=JOB_PENDING,
            enqueued_at=now or datetime.utcnow()
        )
        db.add(job)
        try:
            db.commit()
        except IntegrityError:
            # lost the race against a concurrent enqueue; the pending index holds
            db.rollback()
            existing = self._pending_job(db, content_id)
            if existing:
                return existing, False
            raise

        db.refresh(job)
        logger.debug(f"Enqueued trust recalc for {content_id}: {job.reason}")
        return job, True

    def _pending_job(self, db: Session, content_id: str) -> Optional[TrustRecalcJob]:
        return db.query(TrustRecalcJob).filter(
            TrustRecalcJob.content_id == content_id,
            TrustRecalcJob.status == JOB_PENDING
        ).first()

    def _claimable(self, now: datetime):
        return or_(
            TrustRecalcJob.status == JOB_PENDING,
            and_(
                TrustRecalcJob.status == JOB_PROCESSING,
                TrustRecalcJob.lease_expires_at < now
            )
        )

    def claim(
        self,
        db: Session,
        limit: int,
        token: str,
        now: datetime
    ) -> List[TrustRecalcJob]:
        """Claim up to `limit` jobs in FIFO order for this drain"""
        candidate_ids = [
            row[0] for row in db.query(TrustRecalcJob.id).filter(
                self._claimable(now)
            ).order_by(
                TrustRecalcJob.enqueued_at, TrustRecalcJob.id
            ).limit(limit).with_for_update(skip_locked=True).all()
        ]

        lease_expires_at = now + timedelta(seconds=settings.TRUST_QUEUE_LEASE_SEC)
        claimed_ids = []
        for job_id in candidate_ids:
            # the claimable predicate is re-checked so a concurrent drain cannot double-claim
            updated = db.query(TrustRecalcJob).filter(
                TrustRecalcJob.id == job_id,
                self._claimable(now)
            ).update(
                {
                    TrustRecalcJob.status: JOB_PROCESSING,
                    TrustRecalcJob.claimed_by: token,
                    TrustRecalcJob.lease_expires_at: lease_expires_at,
                    TrustRecalcJob.attempts: TrustRecalcJob.attempts + 1,
                },
                synchronize_session=False
            )
            if updated:
                claimed_ids.append(job_id)
        db.commit()

        if not claimed_ids:
            return []
        return db.query(TrustRecalcJob).filter(
            TrustRecalcJob.id.in_(claimed_ids)
        ).order_by(TrustRecalcJob.enqueued_at, TrustRecalcJob.id).all()

    def drain(
        self,
        db: Session,
        limit: Optional[int] = None,
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Claim and process up to `limit` pending jobs"""
        if limit is None:
            limit = settings.TRUST_QUEUE_BATCH_LIMIT
        if limit < 1:
            raise ValidationFailed("Limit must be at least 1")
        now = now or datetime.utcnow()
        token = uuid.uuid4().hex

        jobs = self.claim(db, limit, token, now)
        result = {"claimed": len(jobs), "processed": 0, "requeued": 0, "failed": 0}

        for job in jobs:
            job_id, content_id, attempts = job.id, job.content_id, job.attempts
            try:
                profile = self.engine.compute(db, content_id, now=now)
            except Exception as e:
                db.rollback()
                logger.error(f"Trust recalc failed for {content_id}: {e}", exc_info=True)
                if attempts >= settings.TRUST_QUEUE_MAX_ATTEMPTS:
                    self._finish(db, job_id, token, JOB_FAILED, now, error="store failure")
                    result["failed"] += 1
                else:
                    self._requeue(db, job_id, token, now, error="store failure")
                    result["requeued"] += 1
                continue

            if profile.is_partial and attempts < settings.TRUST_QUEUE_MAX_ATTEMPTS:
                error = f"signal timeout: {', '.join(profile.partial_dimensions)}"
                self._requeue(db, job_id, token, now, error=error)
                result["requeued"] += 1
            else:
                self._finish(db, job_id, token, JOB_DONE, now)
                result["processed"] += 1

        if jobs:
            logger.info(
                f"Trust queue drain: claimed={result['claimed']} processed={result['processed']} "
                f"requeued={result['requeued']} failed={result['failed']}"
            )
        return result

    def _finish(
        self,
        db: Session,
        job_id: int,
        token: str,
        status: str,
        now: datetime,
        error: Optional[str] = None
    ) -> None:
        db.query(TrustRecalcJob).filter(
            TrustRecalcJob.id == job_id,
            TrustRecalcJob.claimed_by == token
        ).update(
            {
                TrustRecalcJob.status: status,
                TrustRecalcJob.processed_at: now,
                TrustRecalcJob.lease_expires_at: None,
                TrustRecalcJob.last_error: error,
            },
            synchronize_session=False
        )
        db.commit()

    def _requeue(
        self,
        db: Session,
        job_id: int,
        token: str,
        now: datetime,
        error: str
    ) -> None:
        try:
            db.query(TrustRecalcJob).filter(
                TrustRecalcJob.id == job_id,
                TrustRecalcJob.claimed_by == token
            ).update(
                {
                    TrustRecalcJob.status: JOB_PENDING,
                    TrustRecalcJob.claimed_by: None,
                    TrustRecalcJob.lease_expires_at: None,
                    TrustRecalcJob.last_error: error,
                },
                synchronize_session=False
            )
            db.commit()
        except IntegrityError:
            # a fresh pending job for the same content was enqueued meanwhile; it covers this one
            db.rollback()
            self._finish(db, job_id, token, JOB_DONE, now, error=f"superseded ({error})")

    def queue_size(self, db: Session) -> int:
        """Jobs not yet processed (pending or in flight)"""
        return db.query(func.count(TrustRecalcJob.id)).filter(
            TrustRecalcJob.status.in_([JOB_PENDING, JOB_PROCESSING])
        ).scalar() or 0

    def list_jobs(
        self,
        db: Session,
        status: Optional[str] = JOB_PENDING,
        limit: int = 100
    ) -> List[Dict[str, Any]]:
        query = db.query(TrustRecalcJob)
        if status:
            query = query.filter(TrustRecalcJob.status == status)
        jobs = query.order_by(TrustRecalcJob.enqueued_at, TrustRecalcJob.id).limit(limit).all()
        return [self.serialize_job(job) for job in jobs]

    def serialize_job(self, job: TrustRecalcJob) -> Dict[str, Any]:
        return {
            "id": job.id,
            "content_id": job.content_id,
            "reason": job.reason,
            "status": job.status,
            "attempts": job.attempts,
            "last_error": job.last_error,
            "enqueued_at": job.enqueued_at.isoformat() if job.enqueued_at else None,
            "processed_at": job.processed_at.isoformat() if job.processed_at else None,
        }


# Singleton instance
recalc_queue_service = RecalcQueueService()
