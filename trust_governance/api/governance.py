"""
Governance Router - Dashboard views for moderators and admins, scheduler triggers

Metrics (GET /governance?metric=...):
- (none): summary counts
- invite-tree: invite forest by generation
- promotions: pending promotion requests with quorum and cluster risk
- diversity-warnings: inviters with warnings or blocks
- queue-status: pending and in-flight recalc jobs
"""
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from typing import Optional
from sqlalchemy.orm import Session

from trust_governance.dependencies import get_db, require_roles, verify_api_key
from trust_governance.db.models import ROLE_ADMIN, ROLE_MODERATOR
from trust_governance.errors import ValidationFailed
from trust_governance.services.governance_service import governance_service
from trust_governance.services.recalc_queue_service import recalc_queue_service
from trust_governance.services.jury_service import jury_service

router = APIRouter()


class ProcessQueueRequest(BaseModel):
    limit: Optional[int] = None


@router.get("")
async def get_governance_metrics(
    metric: Optional[str] = Query(None, description="invite-tree, promotions, diversity-warnings or queue-status"),
    db: Session = Depends(get_db),
    staff=Depends(require_roles(ROLE_MODERATOR, ROLE_ADMIN))
):
    if metric is None:
        return governance_service.summary(db)
    if metric == "invite-tree":
        return governance_service.invite_tree(db)
    if metric == "promotions":
        return governance_service.pending_promotions(db)
    if metric == "diversity-warnings":
        return governance_service.diversity_warnings(db)
    if metric == "queue-status":
        return governance_service.queue_status(db)
    raise ValidationFailed(f"Unknown metric: {metric}")


@router.post("/process-trust-queue")
def process_trust_queue(
    request: Optional[ProcessQueueRequest] = None,
    db: Session = Depends(get_db),
    admin=Depends(require_roles(ROLE_ADMIN))
):
    """Drain one bounded batch of recalc jobs on demand"""
    limit = request.limit if request else None
    result = recalc_queue_service.drain(db, limit=limit)
    return {"success": True, **result}


@router.post("/internal/drain-trust-queue")
def drain_trust_queue(
    request: Optional[ProcessQueueRequest] = None,
    db: Session = Depends(get_db),
    api_key: str = Depends(verify_api_key)
):
    """Scheduler trigger for a queue drain"""
    limit = request.limit if request else None
    return recalc_queue_service.drain(db, limit=limit)


@router.post("/internal/sweep-jury")
async def sweep_jury_deadlines(
    db: Session = Depends(get_db),
    api_key: str = Depends(verify_api_key)
):
    """Scheduler trigger resolving jury cases whose deadline passed"""
    return jury_service.sweep_expired(db)
