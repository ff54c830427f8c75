import pytest

from tests.conftest import NOW
from trust_governance.db.models import Appeal, Post, ROLE_ADMIN, ROLE_MODERATOR, POST_PUBLISHED
from trust_governance.errors import AuthorizationDenied, Conflict, NotFound, ValidationFailed
from trust_governance.services.appeal_service import appeal_service

REASON = "The flagged claim is quoted"  # 27 characters


def test_author_files_appeal_once(db, make_user, make_post):
    author = make_user()
    post = make_post(author)

    appeal = appeal_service.file_appeal(db, post.id, author.id, "This was flagged in error!", now=NOW)
    assert appeal.status == "pending"

    with pytest.raises(Conflict, match="already have a pending appeal"):
        appeal_service.file_appeal(db, post.id, author.id, REASON, now=NOW)
    assert db.query(Appeal).count() == 1


def test_appeal_preconditions(db, make_user, make_post):
    author, other = make_user(), make_user()
    flagged = make_post(author)
    published = make_post(author, approval_status=POST_PUBLISHED)

    with pytest.raises(ValidationFailed, match="Dispute reason must be at least 20 characters"):
        appeal_service.file_appeal(db, flagged.id, author.id, "too short", now=NOW)
    with pytest.raises(ValidationFailed, match="Missing required field: dispute_reason"):
        appeal_service.file_appeal(db, flagged.id, author.id, "   ", now=NOW)
    with pytest.raises(AuthorizationDenied, match="only appeal your own posts"):
        appeal_service.file_appeal(db, flagged.id, other.id, REASON, now=NOW)
    with pytest.raises(ValidationFailed, match="not flagged"):
        appeal_service.file_appeal(db, published.id, author.id, REASON, now=NOW)
    with pytest.raises(NotFound):
        appeal_service.file_appeal(db, 9999, author.id, REASON, now=NOW)


def test_rejected_appeal_cannot_be_refiled(db, make_user, make_post):
    author, admin = make_user(), make_user(role=ROLE_ADMIN)
    post = make_post(author)
    appeal = appeal_service.file_appeal(db, post.id, author.id, REASON, now=NOW)

    appeal_service.resolve_by_admin(db, appeal.id, admin.id, "rejected", admin_response="Stands", now=NOW)

    with pytest.raises(Conflict, match="already rejected"):
        appeal_service.file_appeal(db, post.id, author.id, REASON, now=NOW)


def test_admin_approval_sends_post_to_review(db, make_user, make_post):
    author, admin = make_user(), make_user(role=ROLE_ADMIN)
    post = make_post(author)
    appeal = appeal_service.file_appeal(db, post.id, author.id, REASON, now=NOW)

    resolved = appeal_service.resolve_by_admin(
        db, appeal.id, admin.id, "approved", admin_response="Context was missing", now=NOW
    )

    assert resolved.status == "approved"
    assert resolved.resolved_by_path == "admin"
    assert resolved.admin_response == "Context was missing"
    assert db.get(Post, post.id).approval_status == "pending_review"


def test_resolving_twice_is_a_conflict(db, make_user, make_post):
    author, admin = make_user(), make_user(role=ROLE_ADMIN)
    post = make_post(author)
    appeal = appeal_service.file_appeal(db, post.id, author.id, REASON, now=NOW)
    appeal_service.resolve_by_admin(db, appeal.id, admin.id, "rejected", now=NOW)

    with pytest.raises(Conflict, match="Appeal already resolved"):
        appeal_service.resolve_by_admin(db, appeal.id, admin.id, "approved", now=NOW)
    assert appeal_service.get_appeal(db, appeal.id).status == "rejected"
    assert db.get(Post, post.id).approval_status == "flagged"


def test_only_admins_resolve(db, make_user, make_post):
    author, moderator = make_user(), make_user(role=ROLE_MODERATOR)
    appeal = appeal_service.file_appeal(db, make_post(author).id, author.id, REASON, now=NOW)

    with pytest.raises(AuthorizationDenied):
        appeal_service.resolve_by_admin(db, appeal.id, moderator.id, "approved", now=NOW)
    with pytest.raises(ValidationFailed):
        appeal_service.resolve_by_admin(db, appeal.id, moderator.id, "maybe", now=NOW)


def test_listing_is_scoped_by_role(db, make_user, make_post):
    alice, bob, moderator = make_user(), make_user(), make_user(role=ROLE_MODERATOR)
    appeal_service.file_appeal(db, make_post(alice).id, alice.id, REASON, now=NOW)
    appeal_service.file_appeal(db, make_post(bob).id, bob.id, REASON, now=NOW)

    assert [a.user_id for a in appeal_service.list_appeals(db, alice)] == [alice.id]
    assert len(appeal_service.list_appeals(db, moderator)) == 2
    assert appeal_service.list_appeals(db, moderator, status="approved") == []


def test_duplicate_pending_appeal_is_rejected_by_the_store(db, make_user, make_post, monkeypatch):
    author = make_user()
    post = make_post(author)
    appeal_service.file_appeal(db, post.id, author.id, REASON, now=NOW)
    # the lookup misses an appeal committed by a concurrent request
    monkeypatch.setattr(
        appeal_service, "_open_or_rejected_statuses", lambda db, post_id, user_id: set()
    )

    with pytest.raises(Conflict, match="already have a pending appeal"):
        appeal_service.file_appeal(db, post.id, author.id, REASON, now=NOW)
    assert db.query(Appeal).count() == 1
