"""
SQLAlchemy ORM Models for the Trust & Governance service
"""
from datetime import datetime
from sqlalchemy import (
    Column, Integer, String, Text, Float, Boolean, DateTime,
    ForeignKey, JSON, UniqueConstraint, Index
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from trust_governance.db.database import Base

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

ROLE_MEMBER = "member"
ROLE_MODERATOR = "moderator"
ROLE_ADMIN = "admin"
ROLES = (ROLE_MEMBER, ROLE_MODERATOR, ROLE_ADMIN)

STATUS_PENDING = "pending"
STATUS_APPROVED = "approved"
STATUS_REJECTED = "rejected"

POST_PUBLISHED = "published"
POST_FLAGGED = "flagged"
POST_PENDING_REVIEW = "pending_review"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(100), unique=True, nullable=False)
    email = Column(String(255), unique=True)
    role = Column(String(20), nullable=False, default=ROLE_MEMBER)  # member, moderator, admin
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, onupdate=func.now())


class Post(Base):
    """Moderation pipeline view of a post: who wrote it and whether it is flagged"""
    __tablename__ = "posts"

    id = Column(Integer, primary_key=True, index=True)
    author_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    title = Column(String(255))
    approval_status = Column(String(50), default=POST_PUBLISHED)  # published, flagged, pending_review, rejected
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, onupdate=func.now())


class TrustProfile(Base):
    __tablename__ = "trust_profiles"

    id = Column(Integer, primary_key=True, index=True)
    content_id = Column(String(255), unique=True, nullable=False)
    content_type = Column(String(50), default="post")  # post, resource, external_data

    # T1: source credibility
    t1_source = Column(Integer, nullable=False, default=50)
    t1_author_known = Column(Boolean, default=False)
    t1_affiliation_level = Column(String(50))

    # T2: method clarity
    t2_method = Column(Integer, nullable=False, default=50)
    t2_method_described = Column(Boolean, default=False)
    t2_reproducible = Column(Boolean, default=False)
    t2_data_available = Column(Boolean, default=False)

    # T3: evidence proximity
    t3_proximity = Column(Integer, nullable=False, default=50)
    t3_proximity_type = Column(String(20))  # on_site, remote, inferred
    t3_firsthand = Column(Boolean, default=False)

    # T4: temporal relevance
    t4_temporal = Column(Integer, nullable=False, default=50)
    is_time_sensitive = Column(Boolean, default=False)
    data_timestamp = Column(DateTime)

    # T5: cross-validation
    t5_validation = Column(Integer, nullable=False, default=50)
    corroborating_count = Column(Integer, default=0)
    contradicting_count = Column(Integer, default=0)
    contradictions = Column(JSONType, default=list)

    summary = Column(Text)
    is_partial = Column(Boolean, default=False)
    partial_dimensions = Column(JSONType, default=list)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)

    @property
    def aggregate(self) -> int:
        scores = [
            self.t1_source, self.t2_method, self.t3_proximity,
            self.t4_temporal, self.t5_validation
        ]
        return round(sum(scores) / len(scores))


class TrustRecalcJob(Base):
    __tablename__ = "trust_recalc_jobs"

    id = Column(Integer, primary_key=True, index=True)
    content_id = Column(String(255), nullable=False, index=True)
    reason = Column(String(255))
    status = Column(String(20), nullable=False, default="pending")  # pending, processing, done
    attempts = Column(Integer, default=0)
    last_error = Column(Text)
    claimed_by = Column(String(64))
    lease_expires_at = Column(DateTime)
    enqueued_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    processed_at = Column(DateTime)

    __table_args__ = (
        # at most one pending job per content unit
        Index(
            "uq_recalc_pending_content", "content_id", unique=True,
            postgresql_where=(status == "pending"),
            sqlite_where=(status == "pending"),
        ),
        Index("idx_recalc_status_enqueued", "status", "enqueued_at"),
    )


class InviteEdge(Base):
    __tablename__ = "invite_tree"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)
    inviter_id = Column(Integer, ForeignKey("users.id"), index=True)  # null for founding members
    generation = Column(Integer, nullable=False, default=0)
    invited_role = Column(String(20), nullable=False, default=ROLE_MEMBER)
    join_method = Column(String(50), nullable=False, default="invite_code")
    seeding_conversation_held = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    user = relationship("User", foreign_keys=[user_id])


class InviteCode(Base):
    """Single-use code a member hands out; redeeming it writes the invite edge"""
    __tablename__ = "invite_codes"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(20), unique=True, nullable=False)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=False)
    target_role = Column(String(20), nullable=False, default=ROLE_MEMBER)
    note = Column(Text)
    max_uses = Column(Integer, nullable=False, default=1)
    current_uses = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    used_by = Column(Integer, ForeignKey("users.id"))
    used_at = Column(DateTime)
    expires_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("idx_invite_codes_creator_role", "created_by", "target_role"),
    )


class DiversityMetric(Base):
    __tablename__ = "invite_diversity_metrics"

    id = Column(Integer, primary_key=True, index=True)
    inviter_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)
    invitee_count = Column(Integer, default=0)
    role_homogeneity = Column(Float, default=0.0)
    peak_velocity = Column(Integer, default=0)
    seeding_ratio = Column(Float, default=1.0)
    flags = Column(JSONType, default=list)
    warning_count = Column(Integer, nullable=False, default=0)
    last_evaluated_count = Column(Integer, default=0)
    invite_blocked = Column(Boolean, nullable=False, default=False)
    blocked_at = Column(DateTime)
    cleared_by = Column(Integer, ForeignKey("users.id"))
    cleared_at = Column(DateTime)
    updated_at = Column(DateTime, default=datetime.utcnow)


class PromotionRequest(Base):
    __tablename__ = "promotion_requests"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    current_role = Column(String(20), nullable=False)
    target_role = Column(String(20), nullable=False)
    reason = Column(Text)
    status = Column(String(20), nullable=False, default=STATUS_PENDING)  # pending, approved, rejected
    required_moderator_endorsements = Column(Integer, nullable=False, default=0)
    required_admin_endorsements = Column(Integer, nullable=False, default=0)
    admin_notes = Column(Text)
    resolved_by = Column(Integer, ForeignKey("users.id"))
    resolved_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    endorsements = relationship(
        "Endorsement", back_populates="request", order_by="Endorsement.created_at"
    )

    __table_args__ = (
        Index(
            "uq_promotion_pending_user_role", "user_id", "target_role", unique=True,
            postgresql_where=(status == STATUS_PENDING),
            sqlite_where=(status == STATUS_PENDING),
        ),
    )


class Endorsement(Base):
    __tablename__ = "promotion_endorsements"

    id = Column(Integer, primary_key=True, index=True)
    request_id = Column(Integer, ForeignKey("promotion_requests.id"), nullable=False)
    endorser_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    endorser_role = Column(String(20), nullable=False)  # snapshot at endorsement time
    justification = Column(Text, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    request = relationship("PromotionRequest", back_populates="endorsements")

    __table_args__ = (
        UniqueConstraint("request_id", "endorser_id", name="unique_request_endorser"),
    )


class Appeal(Base):
    __tablename__ = "moderation_appeals"

    id = Column(Integer, primary_key=True, index=True)
    post_id = Column(Integer, ForeignKey("posts.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    dispute_reason = Column(Text, nullable=False)
    status = Column(String(20), nullable=False, default=STATUS_PENDING)  # pending, approved, rejected
    resolved_by_path = Column(String(10))  # jury, admin
    resolved_by = Column(Integer, ForeignKey("users.id"))
    resolved_at = Column(DateTime)
    admin_response = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, onupdate=func.now())

    __table_args__ = (
        Index(
            "uq_appeal_pending_post_user", "post_id", "user_id", unique=True,
            postgresql_where=(status == STATUS_PENDING),
            sqlite_where=(status == STATUS_PENDING),
        ),
    )


class JuryCase(Base):
    __tablename__ = "jury_cases"

    id = Column(Integer, primary_key=True, index=True)
    appeal_id = Column(Integer, ForeignKey("moderation_appeals.id"), unique=True, nullable=False)
    required_votes = Column(Integer, nullable=False, default=3)
    status = Column(String(20), nullable=False, default="active")  # active, concluded, timed_out, cancelled
    votes_uphold = Column(Integer, nullable=False, default=0)
    votes_overturn = Column(Integer, nullable=False, default=0)
    votes_abstain = Column(Integer, nullable=False, default=0)
    total_votes = Column(Integer, nullable=False, default=0)
    final_decision = Column(String(20))  # uphold, overturn, split, inconclusive
    deadline = Column(DateTime, nullable=False)
    concluded_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    appeal = relationship("Appeal")
    assignments = relationship("JuryAssignment", back_populates="case")
    votes = relationship("JuryVote", back_populates="case")

    __table_args__ = (
        Index("idx_jury_status_deadline", "status", "deadline"),
    )


class JuryAssignment(Base):
    __tablename__ = "jury_assignments"

    id = Column(Integer, primary_key=True, index=True)
    case_id = Column(Integer, ForeignKey("jury_cases.id"), nullable=False)
    juror_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    responded = Column(Boolean, default=False)
    declined = Column(Boolean, nullable=False, default=False)
    decline_reason = Column(Text)
    declined_at = Column(DateTime)
    assigned_at = Column(DateTime, default=datetime.utcnow)

    case = relationship("JuryCase", back_populates="assignments")

    __table_args__ = (
        UniqueConstraint("case_id", "juror_id", name="unique_case_juror_assignment"),
    )


class JuryVote(Base):
    __tablename__ = "jury_votes"

    id = Column(Integer, primary_key=True, index=True)
    case_id = Column(Integer, ForeignKey("jury_cases.id"), nullable=False)
    juror_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    decision = Column(String(20), nullable=False)  # overturn, uphold, abstain
    reasoning = Column(Text, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    case = relationship("JuryCase", back_populates="votes")

    __table_args__ = (
        UniqueConstraint("case_id", "juror_id", name="unique_case_juror_vote"),
    )
