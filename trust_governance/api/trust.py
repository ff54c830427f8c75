"""
Trust Router - Trust profiles and recalculation requests
"""
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from typing import Optional
from sqlalchemy.orm import Session

from trust_governance.dependencies import get_db, get_current_user, require_roles, verify_api_key
from trust_governance.db.models import ROLE_ADMIN
from trust_governance.errors import NotFound
from trust_governance.services.trust_score_service import trust_score_service
from trust_governance.services.recalc_queue_service import recalc_queue_service

router = APIRouter()


class RecalcRequest(BaseModel):
    content_id: str
    reason: Optional[str] = None


class ComputeRequest(BaseModel):
    content_type: str = "post"


@router.get("/{content_id}")
async def get_trust_profile(
    content_id: str,
    db: Session = Depends(get_db),
    user=Depends(get_current_user)
):
    """
    Get the trust profile of a content unit.

    Returns the five dimension scores (T1 source, T2 method, T3 proximity,
    T4 temporal, T5 validation), the aggregate, the trust level label and
    the templated summary. `is_partial` marks profiles computed while some
    signal feeds were unavailable.
    """
    profile = trust_score_service.get_profile(db, content_id)
    if not profile:
        raise NotFound("Trust profile not found")
    return trust_score_service.serialize_profile(profile)


@router.post("/recalc", status_code=202)
async def enqueue_recalculation(
    request: RecalcRequest,
    db: Session = Depends(get_db),
    api_key: str = Depends(verify_api_key)
):
    """
    Queue a trust recalculation for a content unit whose signals changed.

    Called by the content pipeline. At most one pending job exists per
    content unit; repeated requests return the existing job.
    """
    job, created = recalc_queue_service.enqueue(db, request.content_id, request.reason)
    return {
        "created": created,
        "job": recalc_queue_service.serialize_job(job)
    }


@router.post("/{content_id}/compute")
def compute_trust_profile(
    content_id: str,
    request: Optional[ComputeRequest] = None,
    db: Session = Depends(get_db),
    admin=Depends(require_roles(ROLE_ADMIN))
):
    """Recompute a profile immediately, bypassing the queue (admin only)"""
    content_type = request.content_type if request else "post"
    profile = trust_score_service.compute(db, content_id, content_type=content_type)
    return trust_score_service.serialize_profile(profile)
