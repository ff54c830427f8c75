"""
Promotion Service - Peer-endorsed role promotions

A promotion request collects endorsements from moderators and admins until
the quorum for its role pair is met; an admin then approves or rejects it.
Approval flips the request status and the user's role in one transaction.
"""
import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Dict, Any, List, Optional, Tuple
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload
from trust_governance.config import settings
from trust_governance.db.models import (
    PromotionRequest, Endorsement, InviteEdge, User,
    ROLES, ROLE_MEMBER, ROLE_MODERATOR, ROLE_ADMIN,
    STATUS_PENDING, STATUS_APPROVED, STATUS_REJECTED
)
from trust_governance.errors import (
    AuthorizationDenied, Conflict, InsufficientQuorum, NotFound, ValidationFailed, require_text
)

logger = logging.getLogger(__name__)


class PromotionService:
    """Service for promotion requests, endorsements and their resolution"""

    # (current role, target role) -> (moderator endorsements, admin endorsements)
    ROLE_PAIR_POLICY = {
        (ROLE_MEMBER, ROLE_MODERATOR): (2, 1),
        (ROLE_MODERATOR, ROLE_ADMIN): (1, 2),
    }

    ENDORSER_ROLES = (ROLE_MODERATOR, ROLE_ADMIN)

    # cluster signal weights and risk level cut-offs
    CLUSTER_WEIGHTS = {
        "shared_inviter": 2,
        "invite_relation": 2,
        "reciprocal_endorsement": 3,
        "endorser_ring": 2,
        "burst": 1,
    }
    MEDIUM_RISK_SCORE = 3
    HIGH_RISK_SCORE = 5

    def _get_user(self, db: Session, user_id: int) -> User:
        user = db.query(User).filter(User.id == user_id).first()
        if not user:
            raise NotFound("User not found")
        return user

    def _lock_request(self, db: Session, request_id: int) -> PromotionRequest:
        request = db.query(PromotionRequest).filter(
            PromotionRequest.id == request_id
        ).with_for_update().first()
        if not request:
            db.rollback()
            raise NotFound("Promotion request not found")
        return request

    def _has_pending_request(self, db: Session, user_id: int, target_role: str) -> bool:
        return db.query(PromotionRequest.id).filter(
            PromotionRequest.user_id == user_id,
            PromotionRequest.target_role == target_role,
            PromotionRequest.status == STATUS_PENDING
        ).first() is not None

    def create_request(
        self,
        db: Session,
        user_id: int,
        target_role: str,
        reason: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> PromotionRequest:
        """Open a promotion request with thresholds taken from the role-pair policy"""
        now = now or datetime.utcnow()
        if target_role not in ROLES:
            raise ValidationFailed(f"Invalid role: {target_role}. Must be one of {', '.join(ROLES)}")

        user = self._get_user(db, user_id)
        policy = self.ROLE_PAIR_POLICY.get((user.role, target_role))
        if not policy:
            raise ValidationFailed(f"No promotion path from {user.role} to {target_role}")

        if self._has_pending_request(db, user_id, target_role):
            raise Conflict("A pending promotion request already exists for this role")

        cooldown_days = settings.PROMOTION_RESUBMIT_COOLDOWN_DAYS
        if cooldown_days > 0:
            recent_rejection = db.query(PromotionRequest).filter(
                PromotionRequest.user_id == user_id,
                PromotionRequest.target_role == target_role,
                PromotionRequest.status == STATUS_REJECTED,
                PromotionRequest.resolved_at > now - timedelta(days=cooldown_days)
            ).order_by(PromotionRequest.resolved_at.desc()).first()
            if recent_rejection:
                retry_at = recent_rejection.resolved_at + timedelta(days=cooldown_days)
                raise Conflict(
                    "A promotion request for this role was recently rejected",
                    retry_after=retry_at.isoformat()
                )

        required_moderators, required_admins = policy
        request = PromotionRequest(
            user_id=user_id,
            current_role=user.role,
            target_role=target_role,
            reason=reason,
            status=STATUS_PENDING,
            required_moderator_endorsements=required_moderators,
            required_admin_endorsements=required_admins,
            created_at=now
        )
        db.add(request)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            raise Conflict("A pending promotion request already exists for this role")
        db.refresh(request)

        logger.info(f"Promotion request {request.id} opened: user={user_id} {user.role} -> {target_role}")
        return request

    def endorse(
        self,
        db: Session,
        request_id: int,
        endorser_id: int,
        justification: str,
        now: Optional[datetime] = None
    ) -> Tuple[Endorsement, Dict[str, Any]]:
        """Record an endorsement and return it with the request's cluster-risk signal"""
        now = now or datetime.utcnow()
        justification = require_text(justification, "justification", settings.MIN_TEXT_LENGTH)

        endorser = self._get_user(db, endorser_id)
        if endorser.role not in self.ENDORSER_ROLES:
            raise AuthorizationDenied("Only moderators and admins can endorse promotions")

        request = self._lock_request(db, request_id)
        if request.user_id == endorser_id:
            db.rollback()
            raise Conflict("Cannot endorse your own promotion")
        if request.status != STATUS_PENDING:
            db.rollback()
            raise Conflict("Promotion request already resolved")

        endorsement = Endorsement(
            request_id=request_id,
            endorser_id=endorser_id,
            endorser_role=endorser.role,
            justification=justification,
            created_at=now
        )
        db.add(endorsement)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            raise Conflict("You have already endorsed this request")
        db.refresh(endorsement)

        logger.info(f"Endorsement {endorsement.id} on request {request_id} by {endorser.role} {endorser_id}")
        cluster_check = self.detect_endorsement_cluster(db, request_id, now=now)
        return endorsement, cluster_check

    def detect_endorsement_cluster(
        self,
        db: Session,
        request_id: int,
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Inspect the endorser set of a request for signs of collusion.

        Signals:
        - shared_inviter: two or more endorsers were invited by the same person
        - invite_relation: an endorser invited the candidate or was invited by them
        - reciprocal_endorsement: the candidate endorsed an endorser's own request recently
        - endorser_ring: endorsers endorsed each other's requests recently
        - burst: all endorsements arrived within a short window

        The result is advisory and never blocks resolution.
        """
        now = now or datetime.utcnow()
        request = db.query(PromotionRequest).filter(PromotionRequest.id == request_id).first()
        if not request:
            raise NotFound("Promotion request not found")

        endorsements = db.query(Endorsement).filter(Endorsement.request_id == request_id).all()
        endorser_ids = sorted({e.endorser_id for e in endorsements})
        candidate_id = request.user_id
        signals: List[Dict[str, Any]] = []

        if endorser_ids:
            edges = db.query(InviteEdge).filter(
                InviteEdge.user_id.in_(endorser_ids + [candidate_id])
            ).all()
            inviter_of = {edge.user_id: edge.inviter_id for edge in edges}

            by_inviter = defaultdict(list)
            for endorser_id in endorser_ids:
                inviter_id = inviter_of.get(endorser_id)
                if inviter_id is not None:
                    by_inviter[inviter_id].append(endorser_id)
            for inviter_id, group in sorted(by_inviter.items()):
                if len(group) >= 2:
                    signals.append({
                        "type": "shared_inviter",
                        "inviter_id": inviter_id,
                        "endorser_ids": group,
                    })

            related = sorted(
                endorser_id for endorser_id in endorser_ids
                if inviter_of.get(candidate_id) == endorser_id
                or inviter_of.get(endorser_id) == candidate_id
            )
            if related:
                signals.append({"type": "invite_relation", "endorser_ids": related})

            window_start = now - timedelta(days=settings.ENDORSEMENT_RING_WINDOW_DAYS)
            recent = db.query(Endorsement.endorser_id, PromotionRequest.user_id).join(
                PromotionRequest, Endorsement.request_id == PromotionRequest.id
            ).filter(
                Endorsement.request_id != request_id,
                Endorsement.created_at >= window_start,
                Endorsement.endorser_id.in_(endorser_ids + [candidate_id]),
                PromotionRequest.user_id.in_(endorser_ids)
            ).all()

            reciprocal = sorted({target for source, target in recent if source == candidate_id})
            if reciprocal:
                signals.append({"type": "reciprocal_endorsement", "endorser_ids": reciprocal})

            ring_pairs = sorted({
                tuple(sorted((source, target))) for source, target in recent
                if source != candidate_id and source != target
            })
            if ring_pairs:
                signals.append({"type": "endorser_ring", "pairs": [list(pair) for pair in ring_pairs]})

            if len(endorsements) >= 2:
                times = [e.created_at for e in endorsements]
                spread = max(times) - min(times)
                if spread <= timedelta(minutes=settings.ENDORSEMENT_BURST_WINDOW_MINUTES):
                    signals.append({
                        "type": "burst",
                        "spread_minutes": round(spread.total_seconds() / 60, 1),
                    })

        risk_score = sum(self.CLUSTER_WEIGHTS[signal["type"]] for signal in signals)
        if risk_score >= self.HIGH_RISK_SCORE:
            risk_level = "high"
        elif risk_score >= self.MEDIUM_RISK_SCORE:
            risk_level = "medium"
        elif risk_score > 0:
            risk_level = "low"
        else:
            risk_level = "none"

        if risk_level in ("medium", "high"):
            logger.warning(f"Endorsement cluster risk {risk_level} on request {request_id}: {signals}")

        return {
            "request_id": request_id,
            "risk_level": risk_level,
            "risk_score": risk_score,
            "endorser_count": len(endorser_ids),
            "signals": signals,
        }

    def quorum_status(self, db: Session, request: PromotionRequest) -> Dict[str, Any]:
        counts = dict(
            db.query(Endorsement.endorser_role, func.count(Endorsement.id)).filter(
                Endorsement.request_id == request.id
            ).group_by(Endorsement.endorser_role).all()
        )
        required = {
            "moderators": request.required_moderator_endorsements,
            "admins": request.required_admin_endorsements,
        }
        current = {
            "moderators": counts.get(ROLE_MODERATOR, 0),
            "admins": counts.get(ROLE_ADMIN, 0),
        }
        met = current["moderators"] >= required["moderators"] and current["admins"] >= required["admins"]
        return {"required": required, "current": current, "met": met}

    def resolve(
        self,
        db: Session,
        request_id: int,
        decision: str,
        resolver_id: int,
        admin_notes: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> PromotionRequest:
        """Approve or reject a pending request; approval also changes the user's role"""
        now = now or datetime.utcnow()
        if decision not in (STATUS_APPROVED, STATUS_REJECTED):
            raise ValidationFailed("Invalid decision. Must be approved or rejected")

        resolver = self._get_user(db, resolver_id)
        if resolver.role != ROLE_ADMIN:
            raise AuthorizationDenied("Only admins can resolve promotions")

        try:
            request = self._lock_request(db, request_id)
            if request.status != STATUS_PENDING:
                raise Conflict("Promotion request already resolved")

            if decision == STATUS_APPROVED:
                quorum = self.quorum_status(db, request)
                if not quorum["met"]:
                    raise InsufficientQuorum(required=quorum["required"], current=quorum["current"])

            updated = db.query(PromotionRequest).filter(
                PromotionRequest.id == request_id,
                PromotionRequest.status == STATUS_PENDING
            ).update(
                {
                    PromotionRequest.status: decision,
                    PromotionRequest.resolved_by: resolver_id,
                    PromotionRequest.resolved_at: now,
                    PromotionRequest.admin_notes: admin_notes,
                },
                synchronize_session=False
            )
            if not updated:
                raise Conflict("Promotion request already resolved")

            if decision == STATUS_APPROVED:
                promoted = db.query(User).filter(
                    User.id == request.user_id,
                    User.role == request.current_role
                ).update({User.role: request.target_role}, synchronize_session=False)
                if not promoted:
                    raise Conflict("User role changed since the request was created")

            db.commit()
        except Exception:
            db.rollback()
            raise

        db.refresh(request)
        logger.info(
            f"Promotion request {request_id} {decision} by admin {resolver_id}"
            + (f": user {request.user_id} is now {request.target_role}" if decision == STATUS_APPROVED else "")
        )
        return request

    def get_request(self, db: Session, request_id: int) -> PromotionRequest:
        request = db.query(PromotionRequest).filter(PromotionRequest.id == request_id).first()
        if not request:
            raise NotFound("Promotion request not found")
        return request

    def list_pending(self, db: Session) -> List[PromotionRequest]:
        return db.query(PromotionRequest).options(
            selectinload(PromotionRequest.endorsements)
        ).filter(
            PromotionRequest.status == STATUS_PENDING
        ).order_by(PromotionRequest.created_at, PromotionRequest.id).all()

    def pending_count(self, db: Session) -> int:
        return db.query(func.count(PromotionRequest.id)).filter(
            PromotionRequest.status == STATUS_PENDING
        ).scalar() or 0

    def serialize_endorsement(self, endorsement: Endorsement) -> Dict[str, Any]:
        return {
            "id": endorsement.id,
            "request_id": endorsement.request_id,
            "endorser_id": endorsement.endorser_id,
            "endorser_role": endorsement.endorser_role,
            "justification": endorsement.justification,
            "created_at": endorsement.created_at.isoformat() if endorsement.created_at else None,
        }

    def serialize_request(
        self,
        db: Session,
        request: PromotionRequest,
        include_review: bool = False
    ) -> Dict[str, Any]:
        data = {
            "id": request.id,
            "user_id": request.user_id,
            "current_role": request.current_role,
            "target_role": request.target_role,
            "reason": request.reason,
            "status": request.status,
            "required_moderator_endorsements": request.required_moderator_endorsements,
            "required_admin_endorsements": request.required_admin_endorsements,
            "admin_notes": request.admin_notes,
            "resolved_by": request.resolved_by,
            "resolved_at": request.resolved_at.isoformat() if request.resolved_at else None,
            "created_at": request.created_at.isoformat() if request.created_at else None,
            "endorsements": [self.serialize_endorsement(e) for e in request.endorsements],
        }
        if include_review:
            data["quorum"] = self.quorum_status(db, request)
            data["cluster_check"] = self.detect_endorsement_cluster(db, request.id)
        return data


# Singleton instance
promotion_service = PromotionService()
