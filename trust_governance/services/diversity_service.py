"""
Diversity Service - Per-inviter health of the invite graph

Signals, evaluated over an inviter's direct invitees:
- velocity: most invites accepted inside one sliding window
- role_homogeneity: share of the dominant invited role (flagged for elevated roles)
- low_seeding: share of invitees onboarded without a seeding conversation

Each evaluation that sees new invitees and at least one signal adds a warning.
Crossing the warning threshold blocks further invites until an admin clears it.
"""
import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Dict, Any, List, Optional
from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from trust_governance.config import settings
from trust_governance.db.models import DiversityMetric, InviteEdge, ROLE_MEMBER
from trust_governance.errors import NotFound

logger = logging.getLogger(__name__)


def peak_velocity(timestamps: List[datetime], window: timedelta) -> int:
    """Largest number of timestamps falling inside any window of the given width"""
    ordered = sorted(timestamps)
    peak = 0
    start = 0
    for end, ts in enumerate(ordered):
        while ts - ordered[start] > window:
            start += 1
        peak = max(peak, end - start + 1)
    return peak


class DiversityService:
    """Service computing invite diversity metrics and invite blocks"""

    def _get_or_create(self, db: Session, inviter_id: int) -> DiversityMetric:
        metric = db.query(DiversityMetric).filter(
            DiversityMetric.inviter_id == inviter_id
        ).with_for_update().first()
        if metric:
            return metric

        metric = DiversityMetric(inviter_id=inviter_id, warning_count=0, invite_blocked=False)
        db.add(metric)
        try:
            db.flush()
        except IntegrityError:
            db.rollback()
            metric = db.query(DiversityMetric).filter(
                DiversityMetric.inviter_id == inviter_id
            ).with_for_update().one()
        return metric

    def evaluate(self, invitees: List[InviteEdge]) -> Dict[str, Any]:
        """Compute diversity signals for a set of invitee edges"""
        count = len(invitees)
        roles = Counter(edge.invited_role for edge in invitees)
        dominant_role, dominant_count = roles.most_common(1)[0] if roles else (None, 0)
        held = sum(1 for edge in invitees if edge.seeding_conversation_held)

        signals = {
            "invitee_count": count,
            "dominant_role": dominant_role,
            "role_homogeneity": round(dominant_count / count, 4) if count else 0.0,
            "seeding_ratio": round(held / count, 4) if count else 1.0,
            "peak_velocity": peak_velocity(
                [edge.created_at for edge in invitees],
                timedelta(hours=settings.INVITE_VELOCITY_WINDOW_HOURS)
            ),
        }

        flags = []
        if signals["peak_velocity"] > settings.INVITE_VELOCITY_MAX:
            flags.append("velocity")
        if count >= settings.INVITE_DIVERSITY_MIN_SAMPLE:
            if (signals["role_homogeneity"] >= settings.INVITE_ROLE_HOMOGENEITY_MAX
                    and dominant_role != ROLE_MEMBER):
                flags.append("role_homogeneity")
            if signals["seeding_ratio"] < settings.INVITE_SEEDING_RATIO_MIN:
                flags.append("low_seeding")
        signals["flags"] = flags
        return signals

    def recompute(
        self,
        db: Session,
        inviter_id: int,
        now: Optional[datetime] = None
    ) -> DiversityMetric:
        """Refresh an inviter's metrics, adding a warning and blocking when policy says so"""
        now = now or datetime.utcnow()
        try:
            metric = self._get_or_create(db, inviter_id)
            invitees = db.query(InviteEdge).filter(InviteEdge.inviter_id == inviter_id).all()
            signals = self.evaluate(invitees)

            metric.invitee_count = signals["invitee_count"]
            metric.role_homogeneity = signals["role_homogeneity"]
            metric.seeding_ratio = signals["seeding_ratio"]
            metric.peak_velocity = signals["peak_velocity"]
            metric.flags = signals["flags"]

            # only new invitees can raise a new warning, so recomputing is idempotent
            if signals["flags"] and signals["invitee_count"] > (metric.last_evaluated_count or 0):
                metric.warning_count = (metric.warning_count or 0) + 1
                logger.warning(
                    f"Invite diversity warning for inviter {inviter_id}: "
                    f"{signals['flags']} (warnings={metric.warning_count})"
                )
            metric.last_evaluated_count = signals["invitee_count"]

            if (not metric.invite_blocked
                    and metric.warning_count >= settings.INVITE_BLOCK_WARNING_THRESHOLD):
                metric.invite_blocked = True
                metric.blocked_at = now
                logger.info(f"Inviter {inviter_id} blocked after {metric.warning_count} warnings")

            metric.updated_at = now
            db.commit()
            db.refresh(metric)
            return metric
        except Exception:
            db.rollback()
            raise

    def clear_block(
        self,
        db: Session,
        inviter_id: int,
        admin_id: int,
        now: Optional[datetime] = None
    ) -> DiversityMetric:
        """Admin action lifting an invite block; warnings start over"""
        metric = db.query(DiversityMetric).filter(
            DiversityMetric.inviter_id == inviter_id
        ).with_for_update().first()
        if not metric:
            raise NotFound("Diversity metrics not found for inviter")

        metric.invite_blocked = False
        metric.blocked_at = None
        metric.warning_count = 0
        metric.cleared_by = admin_id
        metric.cleared_at = now or datetime.utcnow()
        db.commit()
        db.refresh(metric)

        logger.info(f"Invite block cleared for inviter {inviter_id} by admin {admin_id}")
        return metric

    def get_metric(self, db: Session, inviter_id: int) -> Optional[DiversityMetric]:
        return db.query(DiversityMetric).filter(DiversityMetric.inviter_id == inviter_id).first()

    def list_flagged(self, db: Session) -> List[DiversityMetric]:
        """Metrics carrying warnings or an active block"""
        return db.query(DiversityMetric).filter(
            or_(DiversityMetric.warning_count > 0, DiversityMetric.invite_blocked == True)
        ).order_by(DiversityMetric.warning_count.desc(), DiversityMetric.inviter_id).all()

    def blocked_count(self, db: Session) -> int:
        return db.query(func.count(DiversityMetric.id)).filter(
            DiversityMetric.invite_blocked == True
        ).scalar() or 0

    def serialize_metric(self, metric: DiversityMetric) -> Dict[str, Any]:
        return {
            "inviter_id": metric.inviter_id,
            "invitee_count": metric.invitee_count,
            "role_homogeneity": metric.role_homogeneity,
            "peak_velocity": metric.peak_velocity,
            "seeding_ratio": metric.seeding_ratio,
            "flags": metric.flags or [],
            "warning_count": metric.warning_count,
            "invite_blocked": metric.invite_blocked,
            "blocked_at": metric.blocked_at.isoformat() if metric.blocked_at else None,
            "updated_at": metric.updated_at.isoformat() if metric.updated_at else None,
        }


# Singleton instance
diversity_service = DiversityService()
