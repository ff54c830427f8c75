"""
Jury Service - Time-bounded jury deliberation over appeals

A case closes when the required number of votes is cast or when its deadline
passes, whichever comes first. The majority of cast uphold/overturn votes
decides; abstentions count toward participation only. A juror may decline an
assignment before voting and is then refused a vote.

Decisions:
- overturn: appeal approved, post returns to review
- uphold: appeal rejected
- split (tie): appeal rejected, the moderation decision stands
- inconclusive (no counted votes at the deadline): appeal left pending for an admin
"""
import logging
from datetime import datetime, timedelta
from typing import Dict, Any, List, Optional, Tuple
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from trust_governance.config import settings
from trust_governance.db.models import (
    Appeal, JuryCase, JuryAssignment, JuryVote, User,
    STATUS_PENDING, STATUS_APPROVED, STATUS_REJECTED
)
from trust_governance.errors import (
    AuthorizationDenied, Conflict, NotFound, ValidationFailed, require_text
)
from trust_governance.services.appeal_service import appeal_service, PATH_JURY

logger = logging.getLogger(__name__)

CASE_ACTIVE = "active"
CASE_CONCLUDED = "concluded"
CASE_TIMED_OUT = "timed_out"
CASE_CANCELLED = "cancelled"

VOTE_UPHOLD = "uphold"
VOTE_OVERTURN = "overturn"
VOTE_ABSTAIN = "abstain"
VOTE_VALUES = (VOTE_UPHOLD, VOTE_OVERTURN, VOTE_ABSTAIN)

DECISION_SPLIT = "split"
DECISION_INCONCLUSIVE = "inconclusive"

VOTE_COUNTERS = {
    VOTE_UPHOLD: JuryCase.votes_uphold,
    VOTE_OVERTURN: JuryCase.votes_overturn,
    VOTE_ABSTAIN: JuryCase.votes_abstain,
}


def tally(votes_uphold: int, votes_overturn: int) -> str:
    """Majority of counted votes; ties are split, no votes are inconclusive"""
    if votes_uphold + votes_overturn == 0:
        return DECISION_INCONCLUSIVE
    if votes_overturn > votes_uphold:
        return VOTE_OVERTURN
    if votes_uphold > votes_overturn:
        return VOTE_UPHOLD
    return DECISION_SPLIT


class JuryService:
    """Service for jury cases, votes and deadline-driven resolution"""

    DECISION_TO_APPEAL_STATUS = {
        VOTE_OVERTURN: STATUS_APPROVED,
        VOTE_UPHOLD: STATUS_REJECTED,
        DECISION_SPLIT: STATUS_REJECTED,
    }

    def assign_jury(
        self,
        db: Session,
        appeal_id: int,
        juror_ids: List[int],
        required_votes: Optional[int] = None,
        deadline_hours: Optional[int] = None,
        now: Optional[datetime] = None
    ) -> JuryCase:
        """Open a case for a pending appeal with an externally selected juror pool"""
        now = now or datetime.utcnow()
        if required_votes is None:
            required_votes = settings.JURY_DEFAULT_REQUIRED_VOTES
        if deadline_hours is None:
            deadline_hours = settings.JURY_DEFAULT_DEADLINE_HOURS
        if required_votes < 1:
            raise ValidationFailed("Required votes must be at least 1")
        if deadline_hours <= 0:
            raise ValidationFailed("Deadline must be in the future")

        jurors = list(dict.fromkeys(juror_ids or []))
        if len(jurors) < required_votes:
            raise ValidationFailed(
                "Not enough eligible jurors",
                eligible_count=len(jurors),
                required=required_votes
            )

        try:
            appeal = db.query(Appeal).filter(Appeal.id == appeal_id).with_for_update().first()
            if not appeal:
                raise NotFound("Appeal not found")
            if appeal.status != STATUS_PENDING:
                raise Conflict("Appeal is not pending")
            if appeal.user_id in jurors:
                raise ValidationFailed("The appeal author cannot serve on the jury")
            if db.query(JuryCase.id).filter(JuryCase.appeal_id == appeal_id).first():
                raise Conflict("Deliberation already exists for this appeal")

            known = {
                row[0] for row in db.query(User.id).filter(
                    User.id.in_(jurors), User.is_active == True
                ).all()
            }
            missing = [juror_id for juror_id in jurors if juror_id not in known]
            if missing:
                raise NotFound("Juror not found", juror_ids=missing)

            case = JuryCase(
                appeal_id=appeal_id,
                required_votes=required_votes,
                status=CASE_ACTIVE,
                deadline=now + timedelta(hours=deadline_hours),
                created_at=now
            )
            db.add(case)
            db.flush()
            for juror_id in jurors:
                db.add(JuryAssignment(case_id=case.id, juror_id=juror_id, assigned_at=now))
            db.commit()
        except IntegrityError:
            db.rollback()
            raise Conflict("Deliberation already exists for this appeal")
        except Exception:
            db.rollback()
            raise

        db.refresh(case)
        logger.info(
            f"Jury case {case.id} opened for appeal {appeal_id}: "
            f"{len(jurors)} jurors, {required_votes} votes required, deadline {case.deadline.isoformat()}"
        )
        return case

    def get_case(self, db: Session, case_id: int) -> JuryCase:
        case = db.query(JuryCase).filter(JuryCase.id == case_id).first()
        if not case:
            raise NotFound("Jury case not found")
        return case

    def cast_vote(
        self,
        db: Session,
        case_id: int,
        juror_id: int,
        decision: str,
        reasoning: str,
        now: Optional[datetime] = None
    ) -> Tuple[JuryVote, JuryCase]:
        """Record one juror's vote; closes the case once the vote quorum is reached"""
        now = now or datetime.utcnow()
        if decision not in VOTE_VALUES:
            raise ValidationFailed("Invalid vote value")
        reasoning = require_text(reasoning, "reasoning", settings.MIN_TEXT_LENGTH)

        case = self.get_case(db, case_id)
        if case.status == CASE_ACTIVE and now >= case.deadline:
            self.resolve_case(db, case_id, now=now)
            raise Conflict("This deliberation has expired")
        if case.status != CASE_ACTIVE:
            raise Conflict("This deliberation is no longer active")

        assignment = db.query(JuryAssignment).filter(
            JuryAssignment.case_id == case_id,
            JuryAssignment.juror_id == juror_id
        ).first()
        if not assignment:
            raise AuthorizationDenied("You are not assigned to this deliberation")
        if assignment.declined:
            raise AuthorizationDenied("You have declined this assignment")

        vote = JuryVote(
            case_id=case_id,
            juror_id=juror_id,
            decision=decision,
            reasoning=reasoning,
            created_at=now
        )
        try:
            db.add(vote)
            db.flush()
            counter = VOTE_COUNTERS[decision]
            updated = db.query(JuryCase).filter(
                JuryCase.id == case_id,
                JuryCase.status == CASE_ACTIVE
            ).update(
                {
                    JuryCase.total_votes: JuryCase.total_votes + 1,
                    counter: counter + 1,
                },
                synchronize_session=False
            )
            if not updated:
                raise Conflict("This deliberation is no longer active")
            # a decline that landed after the check above wins over the vote
            responded = db.query(JuryAssignment).filter(
                JuryAssignment.id == assignment.id,
                JuryAssignment.declined == False
            ).update({JuryAssignment.responded: True}, synchronize_session=False)
            if not responded:
                raise AuthorizationDenied("You have declined this assignment")
            db.commit()
        except IntegrityError:
            db.rollback()
            raise Conflict("You have already voted on this deliberation")
        except Exception:
            db.rollback()
            raise

        db.refresh(vote)
        case = self.get_case(db, case_id)
        logger.info(f"Vote {decision} recorded on jury case {case_id} ({case.total_votes}/{case.required_votes})")

        if case.status == CASE_ACTIVE and case.total_votes >= case.required_votes:
            try:
                case = self.resolve_case(db, case_id, now=now)
            except Conflict as e:
                # another vote or the admin path closed the case first; this vote still stands
                logger.info(f"Jury case {case_id} closed concurrently: {e.message}")
                case = self.get_case(db, case_id)
        return vote, case

    def decline_case(
        self,
        db: Session,
        case_id: int,
        juror_id: int,
        reason: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> JuryAssignment:
        """Step down from a case before voting; the juror can no longer vote on it"""
        now = now or datetime.utcnow()
        case = self.get_case(db, case_id)
        if case.status != CASE_ACTIVE or now >= case.deadline:
            raise Conflict("This deliberation is no longer active")

        assignment = db.query(JuryAssignment).filter(
            JuryAssignment.case_id == case_id,
            JuryAssignment.juror_id == juror_id
        ).first()
        if not assignment:
            raise AuthorizationDenied("You are not assigned to this deliberation")
        if assignment.declined:
            raise Conflict("You have already declined this assignment")

        updated = db.query(JuryAssignment).filter(
            JuryAssignment.id == assignment.id,
            JuryAssignment.responded == False,
            JuryAssignment.declined == False
        ).update(
            {
                JuryAssignment.declined: True,
                JuryAssignment.decline_reason: reason.strip() if reason and reason.strip() else None,
                JuryAssignment.declined_at: now,
            },
            synchronize_session=False
        )
        if not updated:
            db.rollback()
            raise Conflict("You have already voted on this deliberation")
        db.commit()
        db.refresh(assignment)

        logger.info(f"Juror {juror_id} declined jury case {case_id}")
        return assignment

    def resolve_case(
        self,
        db: Session,
        case_id: int,
        now: Optional[datetime] = None
    ) -> JuryCase:
        """Close a case whose vote quorum was reached or whose deadline passed"""
        now = now or datetime.utcnow()
        try:
            case = db.query(JuryCase).filter(JuryCase.id == case_id).with_for_update().first()
            if not case:
                raise NotFound("Jury case not found")
            if case.status != CASE_ACTIVE:
                raise Conflict("Jury case already resolved")

            quorum_reached = case.total_votes >= case.required_votes
            if not quorum_reached and now < case.deadline:
                raise Conflict("Jury case is still open")

            decision = tally(case.votes_uphold, case.votes_overturn)
            status = CASE_CONCLUDED if quorum_reached else CASE_TIMED_OUT
            appeal_id = case.appeal_id

            updated = db.query(JuryCase).filter(
                JuryCase.id == case_id,
                JuryCase.status == CASE_ACTIVE
            ).update(
                {
                    JuryCase.status: status,
                    JuryCase.final_decision: decision,
                    JuryCase.concluded_at: now,
                },
                synchronize_session=False
            )
            if not updated:
                raise Conflict("Jury case already resolved")

            appeal_status = self.DECISION_TO_APPEAL_STATUS.get(decision)
            if appeal_status:
                appeal_service.apply_resolution(db, appeal_id, appeal_status, PATH_JURY, now=now)
            db.commit()
        except Conflict as e:
            db.rollback()
            if e.message == "Appeal already resolved":
                self._cancel(db, case_id, now)
            raise
        except Exception:
            db.rollback()
            raise

        logger.info(
            f"Jury case {case_id} {status} with decision {decision}"
            + (f"; appeal {appeal_id} {appeal_status}" if appeal_status else "; appeal awaits admin")
        )
        return self.get_case(db, case_id)

    def _cancel(self, db: Session, case_id: int, now: datetime) -> None:
        db.query(JuryCase).filter(
            JuryCase.id == case_id,
            JuryCase.status == CASE_ACTIVE
        ).update(
            {JuryCase.status: CASE_CANCELLED, JuryCase.concluded_at: now},
            synchronize_session=False
        )
        db.commit()
        logger.info(f"Jury case {case_id} cancelled: appeal was resolved by an admin")

    def sweep_expired(self, db: Session, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Resolve every active case whose deadline has passed"""
        now = now or datetime.utcnow()
        expired_ids = [
            row[0] for row in db.query(JuryCase.id).filter(
                JuryCase.status == CASE_ACTIVE,
                JuryCase.deadline <= now
            ).order_by(JuryCase.deadline).all()
        ]

        resolved, skipped = [], []
        for case_id in expired_ids:
            try:
                self.resolve_case(db, case_id, now=now)
                resolved.append(case_id)
            except Conflict as e:
                logger.info(f"Skipping jury case {case_id}: {e.message}")
                skipped.append(case_id)

        if expired_ids:
            logger.info(f"Jury sweep: resolved={len(resolved)} skipped={len(skipped)}")
        return {"resolved": resolved, "skipped": skipped}

    def list_cases_for_juror(
        self,
        db: Session,
        juror_id: int,
        status: str = CASE_ACTIVE
    ) -> List[Tuple[JuryCase, JuryAssignment]]:
        query = db.query(JuryCase, JuryAssignment).join(
            JuryAssignment, JuryAssignment.case_id == JuryCase.id
        ).filter(
            JuryAssignment.juror_id == juror_id,
            JuryAssignment.declined == False
        )
        if status != "all":
            query = query.filter(JuryCase.status == status)
        return query.order_by(JuryAssignment.assigned_at.desc(), JuryCase.id.desc()).all()

    def list_cases(self, db: Session, status: str = CASE_ACTIVE) -> List[JuryCase]:
        query = db.query(JuryCase)
        if status != "all":
            query = query.filter(JuryCase.status == status)
        return query.order_by(JuryCase.created_at.desc(), JuryCase.id.desc()).all()

    def serialize_case(
        self,
        case: JuryCase,
        assignment: Optional[JuryAssignment] = None,
        include_votes: bool = False
    ) -> Dict[str, Any]:
        data = {
            "id": case.id,
            "appeal_id": case.appeal_id,
            "required_votes": case.required_votes,
            "status": case.status,
            "votes_uphold": case.votes_uphold,
            "votes_overturn": case.votes_overturn,
            "votes_abstain": case.votes_abstain,
            "total_votes": case.total_votes,
            "final_decision": case.final_decision,
            "deadline": case.deadline.isoformat() if case.deadline else None,
            "concluded_at": case.concluded_at.isoformat() if case.concluded_at else None,
            "appeal": appeal_service.serialize_appeal(case.appeal) if case.appeal else None,
        }
        if assignment is not None:
            data["assignment"] = {
                "id": assignment.id,
                "responded": assignment.responded,
                "declined": assignment.declined,
                "assigned_at": assignment.assigned_at.isoformat() if assignment.assigned_at else None,
            }
        if include_votes:
            data["votes"] = [
                {
                    "juror_id": vote.juror_id,
                    "decision": vote.decision,
                    "reasoning": vote.reasoning,
                    "created_at": vote.created_at.isoformat() if vote.created_at else None,
                }
                for vote in case.votes
            ]
        return data


# Singleton instance
jury_service = JuryService()
