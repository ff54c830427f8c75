"""
Invite Graph Service - Records who invited whom as an acyclic forest

Founding members are roots (no inviter, generation 0); every other member
sits one generation below their inviter. A user joins the forest exactly once.
"""
import logging
from collections import defaultdict
from datetime import datetime
from typing import Dict, Any, List, Optional
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from trust_governance.db.models import InviteEdge, DiversityMetric, User, ROLES, ROLE_MEMBER
from trust_governance.errors import Conflict, NotFound, ValidationFailed
from trust_governance.services.diversity_service import diversity_service
from trust_governance.services.invite_code_service import invite_code_service

logger = logging.getLogger(__name__)


class InviteGraphService:
    """Service for the invite forest"""

    # guards lineage walks against corrupted data
    MAX_DEPTH = 1000

    def record_invite(
        self,
        db: Session,
        inviter_id: Optional[int],
        user_id: int,
        invited_role: str = ROLE_MEMBER,
        join_method: str = "invite_code",
        seeding_conversation_held: bool = False,
        invite_code: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> InviteEdge:
        """
        Write the edge for a newly joined user and refresh the inviter's diversity metrics.

        With `invite_code` the code is consumed in the same transaction and
        its issuer becomes the inviter.
        """
        now = now or datetime.utcnow()

        if invited_role not in ROLES:
            raise ValidationFailed(f"Invalid role: {invited_role}. Must be one of {', '.join(ROLES)}")
        if not join_method:
            raise ValidationFailed("Missing required field: join_method")
        if inviter_id is not None and inviter_id == user_id:
            raise ValidationFailed("A user cannot invite themselves")

        if not db.query(User.id).filter(User.id == user_id).first():
            raise NotFound("User not found")

        if self.get_edge(db, user_id):
            raise Conflict("User is already in the invite tree")

        if invite_code:
            invite = invite_code_service.redeem(db, invite_code, user_id, now=now)
            if inviter_id is not None and inviter_id != invite.created_by:
                db.rollback()
                raise ValidationFailed("Invite code was issued by a different inviter")
            inviter_id = invite.created_by
            invited_role = invite.target_role
            join_method = "invite_code"

        generation = 0
        if inviter_id is not None:
            parent = self.get_edge(db, inviter_id)
            if not parent:
                db.rollback()
                raise NotFound("Inviter not found in invite tree")

            metric = db.query(DiversityMetric).filter(
                DiversityMetric.inviter_id == inviter_id
            ).with_for_update().first()
            if metric and metric.invite_blocked:
                db.rollback()
                raise Conflict("Inviter is blocked from sending invites")
            generation = parent.generation + 1

        edge = InviteEdge(
            user_id=user_id,
            inviter_id=inviter_id,
            generation=generation,
            invited_role=invited_role,
            join_method=join_method,
            seeding_conversation_held=seeding_conversation_held,
            created_at=now
        )
        db.add(edge)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            raise Conflict("User is already in the invite tree")
        db.refresh(edge)

        logger.info(f"Invite recorded: user={user_id} inviter={inviter_id} generation={generation}")

        if inviter_id is not None:
            diversity_service.recompute(db, inviter_id, now=now)
        return edge

    def get_edge(self, db: Session, user_id: int) -> Optional[InviteEdge]:
        return db.query(InviteEdge).filter(InviteEdge.user_id == user_id).first()

    def list_tree(self, db: Session) -> List[InviteEdge]:
        return db.query(InviteEdge).order_by(
            InviteEdge.generation, InviteEdge.created_at, InviteEdge.id
        ).all()

    def tree_by_generation(self, db: Session) -> Dict[int, List[Dict[str, Any]]]:
        tree = defaultdict(list)
        for edge in self.list_tree(db):
            tree[edge.generation].append(self.serialize_edge(edge))
        return dict(tree)

    def tree_size(self, db: Session) -> int:
        return db.query(func.count(InviteEdge.id)).scalar() or 0

    def lineage(self, db: Session, user_id: int) -> List[int]:
        """Ancestors of a user, nearest inviter first"""
        ancestors = []
        edge = self.get_edge(db, user_id)
        while edge and edge.inviter_id is not None and len(ancestors) < self.MAX_DEPTH:
            ancestors.append(edge.inviter_id)
            edge = self.get_edge(db, edge.inviter_id)
        return ancestors

    def subtree_size(self, db: Session, user_id: int) -> int:
        """Number of users invited directly or transitively by a user"""
        size = 0
        frontier = [user_id]
        while frontier:
            children = [
                row[0] for row in db.query(InviteEdge.user_id).filter(
                    InviteEdge.inviter_id.in_(frontier)
                ).all()
            ]
            size += len(children)
            frontier = children
        return size

    def serialize_edge(self, edge: InviteEdge) -> Dict[str, Any]:
        return {
            "id": edge.id,
            "user_id": edge.user_id,
            "inviter_id": edge.inviter_id,
            "generation": edge.generation,
            "invited_role": edge.invited_role,
            "join_method": edge.join_method,
            "seeding_conversation_held": edge.seeding_conversation_held,
            "created_at": edge.created_at.isoformat() if edge.created_at else None,
            "user": {
                "id": edge.user.id,
                "username": edge.user.username,
                "role": edge.user.role,
            } if edge.user else None,
        }


# Singleton instance
invite_graph_service = InviteGraphService()
