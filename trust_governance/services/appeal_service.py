"""
Appeal Service - Author appeals against moderation flags

An appeal is resolved exactly once, either by its jury or directly by an
admin. `resolved_by_path` records which path won; the loser's conditional
update matches no pending row and is rejected as already resolved.
"""
import logging
from datetime import datetime
from typing import Dict, Any, List, Optional, Set
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from trust_governance.config import settings
from trust_governance.db.models import (
    Appeal, JuryCase, User,
    ROLE_ADMIN, ROLE_MODERATOR,
    STATUS_PENDING, STATUS_APPROVED, STATUS_REJECTED
)
from trust_governance.errors import (
    AuthorizationDenied, Conflict, NotFound, ValidationFailed, require_text
)
from trust_governance.services.moderation_gateway import moderation_gateway

logger = logging.getLogger(__name__)

PATH_JURY = "jury"
PATH_ADMIN = "admin"


class AppealService:
    """Service for filing, listing and resolving moderation appeals"""

    def file_appeal(
        self,
        db: Session,
        post_id: int,
        user_id: int,
        dispute_reason: str,
        now: Optional[datetime] = None
    ) -> Appeal:
        """File an appeal for a flagged post on behalf of its author"""
        dispute_reason = require_text(dispute_reason, "dispute_reason", settings.MIN_TEXT_LENGTH)

        post = moderation_gateway.get_post(db, post_id)
        if not post:
            raise NotFound("Post not found")
        if post.author_id != user_id:
            raise AuthorizationDenied("You can only appeal your own posts")
        if not moderation_gateway.is_flagged(post):
            raise ValidationFailed("This post is not flagged")

        statuses = self._open_or_rejected_statuses(db, post_id, user_id)
        if STATUS_PENDING in statuses:
            raise Conflict("You already have a pending appeal for this post")
        if STATUS_REJECTED in statuses:
            raise Conflict("Your appeal for this post was already rejected")

        appeal = Appeal(
            post_id=post_id,
            user_id=user_id,
            dispute_reason=dispute_reason,
            status=STATUS_PENDING,
            created_at=now or datetime.utcnow()
        )
        db.add(appeal)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            raise Conflict("You already have a pending appeal for this post")
        db.refresh(appeal)

        logger.info(f"Appeal {appeal.id} filed for post {post_id} by user {user_id}")
        return appeal

    def _open_or_rejected_statuses(self, db: Session, post_id: int, user_id: int) -> Set[str]:
        rows = db.query(Appeal.status).filter(
            Appeal.post_id == post_id,
            Appeal.user_id == user_id,
            Appeal.status.in_([STATUS_PENDING, STATUS_REJECTED])
        ).all()
        return {row[0] for row in rows}

    def get_appeal(self, db: Session, appeal_id: int) -> Appeal:
        appeal = db.query(Appeal).filter(Appeal.id == appeal_id).first()
        if not appeal:
            raise NotFound("Appeal not found")
        return appeal

    def list_appeals(
        self,
        db: Session,
        viewer: User,
        status: Optional[str] = None
    ) -> List[Appeal]:
        """Moderators and admins see every appeal; everyone else only their own"""
        query = db.query(Appeal)
        if viewer.role not in (ROLE_MODERATOR, ROLE_ADMIN):
            query = query.filter(Appeal.user_id == viewer.id)
        if status:
            query = query.filter(Appeal.status == status)
        return query.order_by(Appeal.created_at.desc(), Appeal.id.desc()).all()

    def apply_resolution(
        self,
        db: Session,
        appeal_id: int,
        status: str,
        path: str,
        resolver_id: Optional[int] = None,
        admin_response: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> None:
        """
        Conditionally resolve a pending appeal inside the caller's transaction.

        Raises Conflict when the appeal was already resolved by either path.
        """
        updated = db.query(Appeal).filter(
            Appeal.id == appeal_id,
            Appeal.status == STATUS_PENDING
        ).update(
            {
                Appeal.status: status,
                Appeal.resolved_by_path: path,
                Appeal.resolved_by: resolver_id,
                Appeal.resolved_at: now or datetime.utcnow(),
                Appeal.admin_response: admin_response,
            },
            synchronize_session=False
        )
        if not updated:
            if not db.query(Appeal.id).filter(Appeal.id == appeal_id).first():
                raise NotFound("Appeal not found")
            raise Conflict("Appeal already resolved")

        if status == STATUS_APPROVED:
            post_id = db.query(Appeal.post_id).filter(Appeal.id == appeal_id).scalar()
            moderation_gateway.mark_pending_review(db, post_id)

    def resolve_by_admin(
        self,
        db: Session,
        appeal_id: int,
        admin_id: int,
        status: str,
        admin_response: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Appeal:
        """Admin path: resolve directly and cancel any jury still deliberating"""
        now = now or datetime.utcnow()
        if status not in (STATUS_APPROVED, STATUS_REJECTED):
            raise ValidationFailed("Invalid status")

        admin = db.query(User).filter(User.id == admin_id).first()
        if not admin or admin.role != ROLE_ADMIN:
            raise AuthorizationDenied("Only admins can resolve appeals")

        try:
            self.apply_resolution(
                db, appeal_id, status, PATH_ADMIN,
                resolver_id=admin_id, admin_response=admin_response, now=now
            )
            cancelled = db.query(JuryCase).filter(
                JuryCase.appeal_id == appeal_id,
                JuryCase.status == "active"
            ).update(
                {JuryCase.status: "cancelled", JuryCase.concluded_at: now},
                synchronize_session=False
            )
            db.commit()
        except Exception:
            db.rollback()
            raise

        if cancelled:
            logger.info(f"Jury case for appeal {appeal_id} cancelled by admin resolution")
        logger.info(f"Appeal {appeal_id} {status} by admin {admin_id}")
        return self.get_appeal(db, appeal_id)

    def serialize_appeal(self, appeal: Appeal) -> Dict[str, Any]:
        return {
            "id": appeal.id,
            "post_id": appeal.post_id,
            "user_id": appeal.user_id,
            "dispute_reason": appeal.dispute_reason,
            "status": appeal.status,
            "resolved_by_path": appeal.resolved_by_path,
            "resolved_by": appeal.resolved_by,
            "resolved_at": appeal.resolved_at.isoformat() if appeal.resolved_at else None,
            "admin_response": appeal.admin_response,
            "created_at": appeal.created_at.isoformat() if appeal.created_at else None,
        }


# Singleton instance
appeal_service = AppealService()
