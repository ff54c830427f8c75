"""
Promotions Router - Role promotion requests, endorsements and resolution
"""
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from typing import Optional
from sqlalchemy.orm import Session

from trust_governance.dependencies import get_db, get_current_user, require_roles
from trust_governance.db.models import ROLE_ADMIN, ROLE_MODERATOR
from trust_governance.errors import AuthorizationDenied
from trust_governance.services.promotion_service import promotion_service

router = APIRouter()


class PromotionCreateRequest(BaseModel):
    target_role: str
    reason: Optional[str] = None


class EndorseRequest(BaseModel):
    justification: Optional[str] = None


class ResolveRequest(BaseModel):
    decision: str  # approved, rejected
    admin_notes: Optional[str] = None


@router.post("", status_code=201)
async def create_promotion_request(
    request: PromotionCreateRequest,
    db: Session = Depends(get_db),
    user=Depends(get_current_user)
):
    """
    Request a promotion for the caller.

    Endorsement thresholds come from the role-pair policy:
    - member → moderator: 2 moderator + 1 admin endorsements
    - moderator → admin: 1 moderator + 2 admin endorsements
    """
    promotion = promotion_service.create_request(
        db, user.id, request.target_role, reason=request.reason
    )
    return promotion_service.serialize_request(db, promotion)


@router.get("/pending")
async def list_pending_promotions(
    db: Session = Depends(get_db),
    staff=Depends(require_roles(ROLE_MODERATOR, ROLE_ADMIN))
):
    """Pending requests with endorsements, quorum progress and cluster risk"""
    requests = promotion_service.list_pending(db)
    return {
        "count": len(requests),
        "requests": [
            promotion_service.serialize_request(db, r, include_review=True)
            for r in requests
        ]
    }


@router.get("/{request_id}")
async def get_promotion_request(
    request_id: int,
    db: Session = Depends(get_db),
    user=Depends(get_current_user)
):
    promotion = promotion_service.get_request(db, request_id)
    is_staff = user.role in (ROLE_MODERATOR, ROLE_ADMIN)
    if not is_staff and promotion.user_id != user.id:
        raise AuthorizationDenied()
    return promotion_service.serialize_request(db, promotion, include_review=is_staff)


@router.post("/{request_id}/endorse", status_code=201)
async def endorse_promotion(
    request_id: int,
    request: EndorseRequest,
    db: Session = Depends(get_db),
    user=Depends(get_current_user)
):
    """
    Endorse a pending request (moderators and admins only).

    The justification must be at least 20 characters. The response carries
    the request's advisory cluster check.
    """
    endorsement, cluster_check = promotion_service.endorse(
        db, request_id, user.id, request.justification
    )
    return {
        "success": True,
        "endorsement": promotion_service.serialize_endorsement(endorsement),
        "cluster_check": cluster_check
    }


@router.post("/{request_id}/resolve")
async def resolve_promotion(
    request_id: int,
    request: ResolveRequest,
    db: Session = Depends(get_db),
    user=Depends(get_current_user)
):
    """
    Approve or reject a request (admins only).

    Approval requires the endorsement quorum; otherwise the response lists
    required and current endorsement counts.
    """
    promotion = promotion_service.resolve(
        db, request_id, request.decision, user.id, admin_notes=request.admin_notes
    )
    return {
        "success": True,
        "request": promotion_service.serialize_request(db, promotion)
    }
