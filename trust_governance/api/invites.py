"""
Invites Router - Invite codes, invite forest and diversity monitoring
"""
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from typing import Optional
from sqlalchemy.orm import Session

from trust_governance.dependencies import get_current_user, get_db, require_roles, verify_api_key
from trust_governance.db.models import User, ROLE_ADMIN, ROLE_MODERATOR, ROLE_MEMBER
from trust_governance.errors import NotFound
from trust_governance.services.invite_graph_service import invite_graph_service
from trust_governance.services.diversity_service import diversity_service
from trust_governance.services.invite_code_service import invite_code_service

router = APIRouter()


class InviteAcceptedRequest(BaseModel):
    user_id: int
    inviter_id: Optional[int] = None  # null for founding members
    invited_role: str = ROLE_MEMBER
    join_method: str = "invite_code"
    seeding_conversation_held: bool = False
    invite_code: Optional[str] = None  # consumed on join; its issuer becomes the inviter


class IssueCodeRequest(BaseModel):
    target_role: str = ROLE_MEMBER
    note: Optional[str] = None


@router.post("", status_code=201)
async def record_invite(
    request: InviteAcceptedRequest,
    db: Session = Depends(get_db),
    api_key: str = Depends(verify_api_key)
):
    """
    Record an accepted invite.

    Called by the identity provider when a user joins. The inviter must
    already be in the tree and must not be blocked from inviting. The
    inviter's diversity metrics are refreshed after the edge is written.
    """
    edge = invite_graph_service.record_invite(
        db,
        inviter_id=request.inviter_id,
        user_id=request.user_id,
        invited_role=request.invited_role,
        join_method=request.join_method,
        seeding_conversation_held=request.seeding_conversation_held,
        invite_code=request.invite_code
    )
    result = {"edge": invite_graph_service.serialize_edge(edge)}
    if edge.inviter_id is not None:
        metric = diversity_service.get_metric(db, edge.inviter_id)
        result["inviter_diversity"] = diversity_service.serialize_metric(metric) if metric else None
    return result


@router.post("/codes", status_code=201)
async def issue_invite_code(
    request: IssueCodeRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user)
):
    """Issue a single-use invite code; each member has a lifetime limit per role"""
    invite = invite_code_service.issue_code(
        db,
        creator_id=user.id,
        target_role=request.target_role,
        note=request.note
    )
    return {"success": True, **invite_code_service.serialize_code(invite)}


@router.get("/codes")
async def list_my_invite_codes(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user)
):
    codes = invite_code_service.list_codes(db, user.id)
    return {
        "count": len(codes),
        "codes": [invite_code_service.serialize_code(c) for c in codes],
        "stats": invite_code_service.stats(db, user.id)
    }


@router.get("/codes/validate")
async def validate_invite_code(
    code: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    api_key: str = Depends(verify_api_key)
):
    """Check a code during sign-up without consuming it"""
    return invite_code_service.validate_code(db, code)


@router.get("/tree")
async def get_invite_tree(
    db: Session = Depends(get_db),
    staff=Depends(require_roles(ROLE_MODERATOR, ROLE_ADMIN))
):
    """Full invite forest grouped by generation"""
    generations = invite_graph_service.tree_by_generation(db)
    return {
        "total": sum(len(members) for members in generations.values()),
        "generations": generations
    }


@router.get("/{user_id}/lineage")
async def get_lineage(
    user_id: int,
    db: Session = Depends(get_db),
    staff=Depends(require_roles(ROLE_MODERATOR, ROLE_ADMIN))
):
    """Ancestors of a user (nearest inviter first) and the size of their invite subtree"""
    edge = invite_graph_service.get_edge(db, user_id)
    if not edge:
        raise NotFound("User not found in invite tree")
    return {
        "user_id": user_id,
        "generation": edge.generation,
        "ancestors": invite_graph_service.lineage(db, user_id),
        "subtree_size": invite_graph_service.subtree_size(db, user_id)
    }


@router.get("/diversity/warnings")
async def list_diversity_warnings(
    db: Session = Depends(get_db),
    staff=Depends(require_roles(ROLE_MODERATOR, ROLE_ADMIN))
):
    """Inviters carrying diversity warnings or an invite block"""
    metrics = diversity_service.list_flagged(db)
    return {
        "count": len(metrics),
        "warnings": [diversity_service.serialize_metric(m) for m in metrics]
    }


@router.get("/diversity/{inviter_id}")
async def get_diversity_metric(
    inviter_id: int,
    db: Session = Depends(get_db),
    staff=Depends(require_roles(ROLE_MODERATOR, ROLE_ADMIN))
):
    metric = diversity_service.get_metric(db, inviter_id)
    if not metric:
        raise NotFound("Diversity metrics not found for inviter")
    return diversity_service.serialize_metric(metric)


@router.post("/diversity/{inviter_id}/clear-block")
async def clear_invite_block(
    inviter_id: int,
    db: Session = Depends(get_db),
    admin=Depends(require_roles(ROLE_ADMIN))
):
    """Lift an inviter's invite block and reset their warnings"""
    metric = diversity_service.clear_block(db, inviter_id, admin.id)
    return diversity_service.serialize_metric(metric)
