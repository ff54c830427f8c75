import re
from datetime import timedelta

import pytest

from tests.conftest import NOW
from trust_governance.config import settings
from trust_governance.db.models import DiversityMetric, InviteCode, ROLE_MODERATOR
from trust_governance.errors import AuthorizationDenied, Conflict, ValidationFailed
from trust_governance.services.invite_code_service import invite_code_service
from trust_governance.services.invite_graph_service import invite_graph_service


@pytest.fixture
def inviter(db, make_user):
    user = make_user()
    invite_graph_service.record_invite(db, None, user.id, now=NOW)
    return user


def test_issued_code_is_single_use_and_expires(db, inviter):
    invite = invite_code_service.issue_code(db, inviter.id, note=" for my lab partner ", now=NOW)

    assert re.fullmatch(r"[A-HJ-NP-Z2-9]{4}-[A-HJ-NP-Z2-9]{4}", invite.code)
    assert invite.max_uses == 1
    assert invite.current_uses == 0
    assert invite.note == "for my lab partner"
    assert invite.expires_at == NOW + timedelta(days=settings.INVITE_CODE_TTL_DAYS)


def test_lifetime_limit_per_role(db, inviter, monkeypatch):
    monkeypatch.setattr(settings, "INVITE_CODE_LIFETIME_LIMIT", 2)
    invite_code_service.issue_code(db, inviter.id, now=NOW)
    invite_code_service.issue_code(db, inviter.id, now=NOW)

    with pytest.raises(ValidationFailed, match=r"lifetime member invite limit \(2\)") as excinfo:
        invite_code_service.issue_code(db, inviter.id, now=NOW)
    assert excinfo.value.extra == {"issued": 2, "limit": 2}
    assert invite_code_service.stats(db, inviter.id)["member"] == {"issued": 2, "limit": 2, "remaining": 0}


def test_issue_rules(db, inviter, make_user):
    with pytest.raises(ValidationFailed, match="Invalid target role"):
        invite_code_service.issue_code(db, inviter.id, target_role=ROLE_MODERATOR, now=NOW)
    with pytest.raises(AuthorizationDenied, match="Only members of the invite tree"):
        invite_code_service.issue_code(db, make_user().id, now=NOW)
    assert db.query(InviteCode).count() == 0


def test_redeeming_a_code_writes_the_edge(db, inviter, make_user):
    invite = invite_code_service.issue_code(db, inviter.id, now=NOW)
    newcomer, latecomer = make_user(), make_user()

    edge = invite_graph_service.record_invite(
        db, None, newcomer.id, invite_code=invite.code.lower(), now=NOW + timedelta(hours=1)
    )

    assert edge.inviter_id == inviter.id
    assert edge.generation == 1
    assert edge.join_method == "invite_code"
    used = invite_code_service.get_code(db, invite.code)
    assert used.current_uses == 1
    assert used.is_active is False
    assert used.used_by == newcomer.id

    with pytest.raises(Conflict, match="already been used"):
        invite_graph_service.record_invite(db, None, latecomer.id, invite_code=invite.code, now=NOW)
    assert invite_graph_service.get_edge(db, latecomer.id) is None
    assert invite_code_service.validate_code(db, invite.code, now=NOW)["valid"] is False


def test_code_from_another_inviter_is_not_consumed(db, inviter, make_user):
    other_root, newcomer = make_user(), make_user()
    invite_graph_service.record_invite(db, None, other_root.id, now=NOW)
    invite = invite_code_service.issue_code(db, inviter.id, now=NOW)

    with pytest.raises(ValidationFailed, match="different inviter"):
        invite_graph_service.record_invite(db, other_root.id, newcomer.id, invite_code=invite.code, now=NOW)

    assert invite_code_service.get_code(db, invite.code).current_uses == 0
    assert invite_graph_service.get_edge(db, newcomer.id) is None


def test_expired_code_is_refused(db, inviter, make_user):
    invite = invite_code_service.issue_code(db, inviter.id, now=NOW)
    later = NOW + timedelta(days=settings.INVITE_CODE_TTL_DAYS + 1)

    assert invite_code_service.validate_code(db, invite.code, now=later) == {
        "valid": False, "error": "Invite code has expired"
    }
    with pytest.raises(Conflict, match="expired"):
        invite_graph_service.record_invite(db, None, make_user().id, invite_code=invite.code, now=later)


def test_blocked_inviter_cannot_issue_or_hand_out_codes(db, inviter, make_user):
    invite = invite_code_service.issue_code(db, inviter.id, now=NOW)
    db.add(DiversityMetric(inviter_id=inviter.id, warning_count=3, invite_blocked=True))
    db.commit()

    with pytest.raises(Conflict, match="blocked"):
        invite_code_service.issue_code(db, inviter.id, now=NOW)
    assert invite_code_service.validate_code(db, invite.code, now=NOW)["error"] == (
        "Inviter is blocked from sending invites"
    )
    with pytest.raises(Conflict, match="blocked"):
        invite_graph_service.record_invite(db, None, make_user().id, invite_code=invite.code, now=NOW)


def test_validate_code(db, inviter):
    invite = invite_code_service.issue_code(db, inviter.id, now=NOW)

    result = invite_code_service.validate_code(db, f"  {invite.code.lower()} ", now=NOW)
    assert result["valid"] is True
    assert result["inviter_id"] == inviter.id
    assert result["target_role"] == "member"

    assert invite_code_service.validate_code(db, "ZZZZ-ZZZZ", now=NOW) == {
        "valid": False, "error": "Invite code not found"
    }
    with pytest.raises(ValidationFailed, match="Invite code is required"):
        invite_code_service.validate_code(db, "   ")
