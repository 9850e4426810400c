from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from socialflow.approvals.engine import submit_for_approval
from socialflow.approvals.review_links import generate_review_link, submit_review_link, verify_review_link
from socialflow.approvals.states import ReviewOutcome
from socialflow.approvals.workflows import StepSpec
from socialflow.core.errors import ForbiddenError, NotFoundError, ValidationError
from socialflow.storage.models import ReviewLink
from socialflow.storage.security import hash_token


@pytest.fixture
def pending_assignment(team):
    team.add("client_reviewer")
    team.workflow(StepSpec(name="Client", order=1, role="client_reviewer"))
    post = team.post("Spring campaign teaser")
    instance = submit_for_approval(team.session, post_id=post.id, acting_user_id=team.owner_user_id)
    return instance.assignments[0]


def _issue(team, assignment, **kwargs):
    return generate_review_link(
        team.session,
        assignment_id=assignment.id,
        acting_user_id=team.owner_user_id,
        reviewer_email="Client@Partner.io",
        **kwargs,
    )


def test_generated_link_stores_only_the_token_hash(team, pending_assignment) -> None:
    issued = _issue(team, pending_assignment)

    assert issued.reviewer_email == "client@partner.io"
    assert issued.url == f"https://app.socialflow.io/approvals?token={issued.token}"
    stored = team.session.scalars(select(ReviewLink)).one()
    assert stored.token_hash == hash_token(issued.token)
    assert stored.token_hash != issued.token


def test_verify_shows_the_post_under_review(team, pending_assignment) -> None:
    issued = _issue(team, pending_assignment)

    view = verify_review_link(team.session, token=issued.token)

    assert view.assignment_id == pending_assignment.id
    assert view.post_content == "Spring campaign teaser"
    assert view.step_role == "client_reviewer"
    assert view.reviewer_email == "client@partner.io"


def test_link_approves_once(team, pending_assignment) -> None:
    issued = _issue(team, pending_assignment)

    result = submit_review_link(team.session, token=issued.token, approve=True, reviewer_name="Dana from Partner")

    assert result.outcome == ReviewOutcome.APPROVED
    assert pending_assignment.reviewer_label == "Dana from Partner"
    assert pending_assignment.status == "approved"

    with pytest.raises(NotFoundError) as exc_info:
        submit_review_link(team.session, token=issued.token, approve=False)
    assert exc_info.value.code == "invalid_review_link"
    with pytest.raises(NotFoundError):
        verify_review_link(team.session, token=issued.token)


def test_rejection_through_link_uses_email_as_label(team, pending_assignment) -> None:
    issued = _issue(team, pending_assignment)

    result = submit_review_link(team.session, token=issued.token, approve=False, feedback="Wrong logo")

    assert result.outcome == ReviewOutcome.REJECTED
    assert pending_assignment.reviewer_label == "client@partner.io"
    assert pending_assignment.feedback == "Wrong logo"


def test_expired_link_is_rejected(team, pending_assignment) -> None:
    issued = _issue(team, pending_assignment)
    link = team.session.scalars(select(ReviewLink)).one()
    link.expires_at = datetime.now(timezone.utc) - timedelta(minutes=1)
    team.session.commit()

    with pytest.raises(NotFoundError) as exc_info:
        verify_review_link(team.session, token=issued.token)
    assert exc_info.value.code == "invalid_review_link"
    with pytest.raises(NotFoundError):
        submit_review_link(team.session, token=issued.token, approve=True)
    assert pending_assignment.status == "pending"


def test_unknown_token_is_rejected(team) -> None:
    with pytest.raises(NotFoundError):
        verify_review_link(team.session, token="not-a-real-token")


def test_link_lifetime_must_be_in_range(team, pending_assignment) -> None:
    with pytest.raises(ValidationError) as exc_info:
        _issue(team, pending_assignment, expires_in_hours=0)
    assert exc_info.value.code == "invalid_review_link_ttl"

    with pytest.raises(ValidationError):
        _issue(team, pending_assignment, expires_in_hours=721)

    issued = _issue(team, pending_assignment, expires_in_hours=1)
    assert issued.expires_at <= datetime.now(timezone.utc) + timedelta(hours=1)


def test_only_team_managers_generate_links(team, pending_assignment) -> None:
    creator = team.add("content_creator")

    with pytest.raises(ForbiddenError) as exc_info:
        generate_review_link(
            team.session,
            assignment_id=pending_assignment.id,
            acting_user_id=creator.user_id,
            reviewer_email="client@partner.io",
        )
    assert exc_info.value.code == "permission_denied"
    assert exc_info.value.details["permission"] == "team.manage"
