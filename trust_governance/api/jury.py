"""
Jury Router - Jury cases and votes over appeals
"""
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from typing import List, Optional
from sqlalchemy.orm import Session

from trust_governance.dependencies import get_db, get_current_user, require_roles
from trust_governance.db.models import JuryAssignment, ROLE_ADMIN
from trust_governance.errors import AuthorizationDenied
from trust_governance.services.jury_service import jury_service

router = APIRouter()


class AssignJuryRequest(BaseModel):
    appeal_id: int
    juror_ids: List[int]
    required_votes: Optional[int] = None
    deadline_hours: Optional[int] = None


class VoteRequest(BaseModel):
    decision: str  # uphold, overturn, abstain
    reasoning: Optional[str] = None


class DeclineRequest(BaseModel):
    reason: Optional[str] = None


@router.post("/cases", status_code=201)
async def assign_jury(
    request: AssignJuryRequest,
    db: Session = Depends(get_db),
    admin=Depends(require_roles(ROLE_ADMIN))
):
    """
    Open a jury case for a pending appeal.

    Juror selection happens upstream; the appeal author may not serve and
    at least `required_votes` jurors are needed.
    """
    case = jury_service.assign_jury(
        db,
        request.appeal_id,
        request.juror_ids,
        required_votes=request.required_votes,
        deadline_hours=request.deadline_hours
    )
    return jury_service.serialize_case(case)


@router.get("/cases")
async def list_my_cases(
    status: str = Query("active", description="active, concluded, timed_out, cancelled or all"),
    db: Session = Depends(get_db),
    user=Depends(get_current_user)
):
    """Cases the caller is assigned to"""
    rows = jury_service.list_cases_for_juror(db, user.id, status=status)
    return {
        "count": len(rows),
        "cases": [jury_service.serialize_case(case, assignment) for case, assignment in rows]
    }


@router.get("/admin/cases")
async def list_all_cases(
    status: str = Query("active", description="active, concluded, timed_out, cancelled or all"),
    db: Session = Depends(get_db),
    admin=Depends(require_roles(ROLE_ADMIN))
):
    cases = jury_service.list_cases(db, status=status)
    return {
        "count": len(cases),
        "cases": [jury_service.serialize_case(case) for case in cases]
    }


@router.get("/cases/{case_id}")
async def get_case(
    case_id: int,
    db: Session = Depends(get_db),
    user=Depends(get_current_user)
):
    """Case detail; individual votes are visible to admins only"""
    case = jury_service.get_case(db, case_id)
    assignment = db.query(JuryAssignment).filter(
        JuryAssignment.case_id == case_id,
        JuryAssignment.juror_id == user.id
    ).first()
    is_admin = user.role == ROLE_ADMIN
    if not assignment and not is_admin:
        raise AuthorizationDenied("You are not assigned to this deliberation")
    return jury_service.serialize_case(case, assignment, include_votes=is_admin)


@router.post("/cases/{case_id}/votes", status_code=201)
async def cast_vote(
    case_id: int,
    request: VoteRequest,
    db: Session = Depends(get_db),
    user=Depends(get_current_user)
):
    """
    Cast the caller's vote.

    One vote per juror per case; reasoning must be at least 20 characters.
    The case resolves as soon as the required number of votes is reached.
    """
    vote, case = jury_service.cast_vote(db, case_id, user.id, request.decision, request.reasoning)
    return {
        "success": True,
        "vote": {
            "id": vote.id,
            "case_id": vote.case_id,
            "decision": vote.decision,
            "created_at": vote.created_at.isoformat() if vote.created_at else None
        },
        "case": jury_service.serialize_case(case)
    }


@router.post("/cases/{case_id}/decline")
async def decline_case(
    case_id: int,
    request: Optional[DeclineRequest] = None,
    db: Session = Depends(get_db),
    user=Depends(get_current_user)
):
    """Step down from an assigned case before voting"""
    assignment = jury_service.decline_case(
        db, case_id, user.id, reason=request.reason if request else None
    )
    return {
        "success": True,
        "assignment": {
            "id": assignment.id,
            "case_id": assignment.case_id,
            "declined": assignment.declined,
            "declined_at": assignment.declined_at.isoformat() if assignment.declined_at else None
        }
    }


@router.post("/cases/{case_id}/resolve")
async def resolve_case(
    case_id: int,
    db: Session = Depends(get_db),
    admin=Depends(require_roles(ROLE_ADMIN))
):
    """Close a case whose quorum was reached or whose deadline passed"""
    case = jury_service.resolve_case(db, case_id)
    return jury_service.serialize_case(case, include_votes=True)
