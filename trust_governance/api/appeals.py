"""
Appeals Router - Author appeals against moderation flags
"""
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from typing import Optional
from sqlalchemy.orm import Session

from trust_governance.dependencies import get_db, get_current_user
from trust_governance.db.models import ROLE_ADMIN, ROLE_MODERATOR
from trust_governance.errors import AuthorizationDenied
from trust_governance.services.appeal_service import appeal_service

router = APIRouter()


class AppealCreateRequest(BaseModel):
    post_id: int
    dispute_reason: Optional[str] = None


class AppealResolveRequest(BaseModel):
    status: str  # approved, rejected
    admin_response: Optional[str] = None


@router.post("", status_code=201)
async def create_appeal(
    request: AppealCreateRequest,
    db: Session = Depends(get_db),
    user=Depends(get_current_user)
):
    """
    Appeal the flag on one of the caller's posts.

    The dispute reason must be at least 20 characters. Only one pending
    appeal may exist per post, and a rejected appeal cannot be refiled.
    """
    appeal = appeal_service.file_appeal(db, request.post_id, user.id, request.dispute_reason)
    return {
        "success": True,
        "appeal": appeal_service.serialize_appeal(appeal)
    }


@router.get("")
async def list_appeals(
    status: Optional[str] = Query(None, description="Filter by status"),
    db: Session = Depends(get_db),
    user=Depends(get_current_user)
):
    """Moderators and admins see all appeals; other users see their own"""
    appeals = appeal_service.list_appeals(db, user, status=status)
    return {
        "count": len(appeals),
        "appeals": [appeal_service.serialize_appeal(a) for a in appeals]
    }


@router.get("/{appeal_id}")
async def get_appeal(
    appeal_id: int,
    db: Session = Depends(get_db),
    user=Depends(get_current_user)
):
    appeal = appeal_service.get_appeal(db, appeal_id)
    if user.role not in (ROLE_MODERATOR, ROLE_ADMIN) and appeal.user_id != user.id:
        raise AuthorizationDenied()
    return appeal_service.serialize_appeal(appeal)


@router.post("/{appeal_id}/resolve")
async def resolve_appeal(
    appeal_id: int,
    request: AppealResolveRequest,
    db: Session = Depends(get_db),
    user=Depends(get_current_user)
):
    """
    Resolve an appeal directly (admins only).

    Mutually exclusive with jury resolution: whichever commits first wins
    and the other is rejected as already resolved. An active jury case for
    the appeal is cancelled.
    """
    appeal = appeal_service.resolve_by_admin(
        db, appeal_id, user.id, request.status, admin_response=request.admin_response
    )
    return {
        "success": True,
        "appeal": appeal_service.serialize_appeal(appeal)
    }
