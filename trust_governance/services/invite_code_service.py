"""
Invite Code Service - Issues and redeems single-use invite codes

Codes look like ABCD-2345 and skip look-alike characters (0/O, 1/I). Each
member may issue a limited number of codes per target role over their
lifetime; a blocked inviter cannot issue new codes, and codes they already
handed out stop validating until the block is cleared.
"""
import logging
import secrets
from datetime import datetime, timedelta
from typing import Dict, Any, List, Optional
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from trust_governance.config import settings
from trust_governance.db.models import (
    DiversityMetric, InviteCode, InviteEdge, User, ROLE_MEMBER
)
from trust_governance.errors import (
    AuthorizationDenied, Conflict, NotFound, ValidationFailed
)

logger = logging.getLogger(__name__)

CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"

# Staff roles are reached through promotions, never through an invite
INVITE_CODE_ROLES = (ROLE_MEMBER,)


def normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


class InviteCodeService:
    """Service for invite codes"""

    # fresh codes to try when a generated one collides with an existing code
    CODE_ATTEMPTS = 3

    def generate_code(self) -> str:
        chars = "".join(secrets.choice(CODE_ALPHABET) for _ in range(8))
        return f"{chars[:4]}-{chars[4:]}"

    def issue_code(
        self,
        db: Session,
        creator_id: int,
        target_role: str = ROLE_MEMBER,
        note: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> InviteCode:
        """
        Issue a single-use code for a member of the invite tree.

        Raises:
            ValidationFailed: invalid target role, or the lifetime limit is reached
            AuthorizationDenied: the creator has not joined the invite tree
            Conflict: the creator is blocked from inviting
        """
        now = now or datetime.utcnow()
        if target_role not in INVITE_CODE_ROLES:
            raise ValidationFailed(
                f"Invalid target role. Must be one of {', '.join(INVITE_CODE_ROLES)}"
            )

        for attempt in range(1, self.CODE_ATTEMPTS + 1):
            try:
                return self._insert_code(db, creator_id, target_role, note, now)
            except IntegrityError:
                db.rollback()
                logger.warning(f"Invite code collision for user {creator_id} (attempt {attempt})")
        raise Conflict("Could not generate a unique invite code")

    def _insert_code(
        self,
        db: Session,
        creator_id: int,
        target_role: str,
        note: Optional[str],
        now: datetime
    ) -> InviteCode:
        # the creator's row lock serializes concurrent issues against the lifetime limit
        creator = db.query(User).filter(User.id == creator_id).with_for_update().first()
        if not creator or not creator.is_active:
            db.rollback()
            raise NotFound("User not found")

        if not db.query(InviteEdge.id).filter(InviteEdge.user_id == creator_id).first():
            db.rollback()
            raise AuthorizationDenied("Only members of the invite tree can issue invites")

        if self._is_blocked(db, creator_id):
            db.rollback()
            raise Conflict("Inviter is blocked from sending invites")

        limit = settings.INVITE_CODE_LIFETIME_LIMIT
        issued = self.count_issued(db, creator_id, target_role)
        if issued >= limit:
            db.rollback()
            raise ValidationFailed(
                f"You have reached your lifetime {target_role} invite limit ({limit})",
                issued=issued,
                limit=limit
            )

        ttl_days = settings.INVITE_CODE_TTL_DAYS
        invite = InviteCode(
            code=self.generate_code(),
            created_by=creator_id,
            target_role=target_role,
            note=note.strip() if note and note.strip() else None,
            max_uses=1,
            current_uses=0,
            is_active=True,
            expires_at=now + timedelta(days=ttl_days) if ttl_days > 0 else None,
            created_at=now
        )
        db.add(invite)
        db.commit()
        db.refresh(invite)

        logger.info(f"Invite code {invite.id} issued by user {creator_id} for role {target_role}")
        return invite

    def count_issued(self, db: Session, creator_id: int, target_role: str) -> int:
        return db.query(func.count(InviteCode.id)).filter(
            InviteCode.created_by == creator_id,
            InviteCode.target_role == target_role
        ).scalar() or 0

    def _is_blocked(self, db: Session, inviter_id: int) -> bool:
        blocked = db.query(DiversityMetric.invite_blocked).filter(
            DiversityMetric.inviter_id == inviter_id
        ).scalar()
        return bool(blocked)

    def get_code(self, db: Session, code: str) -> Optional[InviteCode]:
        return db.query(InviteCode).filter(InviteCode.code == normalize_code(code)).first()

    def _check_usable(self, db: Session, invite: InviteCode, now: datetime) -> Optional[str]:
        """Reason the code cannot be redeemed right now, or None"""
        if invite.current_uses >= invite.max_uses:
            return "Invite code has already been used"
        if not invite.is_active:
            return "Invite code is no longer active"
        if invite.expires_at and invite.expires_at <= now:
            return "Invite code has expired"
        if self._is_blocked(db, invite.created_by):
            return "Inviter is blocked from sending invites"
        return None

    def validate_code(
        self,
        db: Session,
        code: Optional[str],
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Check a code before sign-up without consuming it"""
        if not normalize_code(code):
            raise ValidationFailed("Invite code is required")
        now = now or datetime.utcnow()

        invite = self.get_code(db, code)
        if not invite:
            return {"valid": False, "error": "Invite code not found"}

        reason = self._check_usable(db, invite, now)
        if reason:
            return {"valid": False, "error": reason}
        return {
            "valid": True,
            "code": invite.code,
            "target_role": invite.target_role,
            "inviter_id": invite.created_by,
            "expires_at": invite.expires_at.isoformat() if invite.expires_at else None,
        }

    def redeem(
        self,
        db: Session,
        code: str,
        user_id: int,
        now: Optional[datetime] = None
    ) -> InviteCode:
        """
        Consume one use of a code inside the caller's transaction.

        The caller commits together with the invite edge, so a failed edge
        insert also gives the use back.
        """
        now = now or datetime.utcnow()
        invite = db.query(InviteCode).filter(
            InviteCode.code == normalize_code(code)
        ).with_for_update().first()
        if not invite:
            db.rollback()
            raise NotFound("Invite code not found")

        reason = self._check_usable(db, invite, now)
        if reason:
            db.rollback()
            raise Conflict(reason)

        updated = db.query(InviteCode).filter(
            InviteCode.id == invite.id,
            InviteCode.is_active.is_(True),
            InviteCode.current_uses < InviteCode.max_uses
        ).update(
            {
                InviteCode.current_uses: InviteCode.current_uses + 1,
                InviteCode.used_by: user_id,
                InviteCode.used_at: now,
                InviteCode.is_active: InviteCode.current_uses + 1 < InviteCode.max_uses,
            },
            synchronize_session=False
        )
        if not updated:
            db.rollback()
            raise Conflict("Invite code has already been used")
        return invite

    def list_codes(self, db: Session, creator_id: int) -> List[InviteCode]:
        return db.query(InviteCode).filter(
            InviteCode.created_by == creator_id
        ).order_by(InviteCode.created_at.desc(), InviteCode.id.desc()).all()

    def stats(self, db: Session, creator_id: int) -> Dict[str, Dict[str, int]]:
        limit = settings.INVITE_CODE_LIFETIME_LIMIT
        stats = {}
        for role in INVITE_CODE_ROLES:
            issued = self.count_issued(db, creator_id, role)
            stats[role] = {"issued": issued, "limit": limit, "remaining": max(0, limit - issued)}
        return stats

    def serialize_code(self, invite: InviteCode) -> Dict[str, Any]:
        return {
            "id": invite.id,
            "code": invite.code,
            "created_by": invite.created_by,
            "target_role": invite.target_role,
            "note": invite.note,
            "max_uses": invite.max_uses,
            "current_uses": invite.current_uses,
            "is_active": invite.is_active,
            "used_by": invite.used_by,
            "used_at": invite.used_at.isoformat() if invite.used_at else None,
            "expires_at": invite.expires_at.isoformat() if invite.expires_at else None,
            "created_at": invite.created_at.isoformat() if invite.created_at else None,
        }


# Singleton instance
invite_code_service = InviteCodeService()
