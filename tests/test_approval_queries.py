from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from socialflow.approvals.engine import review_assignment, submit_for_approval
from socialflow.approvals.queries import get_assigned_requests, get_assignment, get_my_requests
from socialflow.approvals.workflows import StepSpec
from socialflow.core.errors import ForbiddenError, ValidationError
from socialflow.operations.stuck_approvals import find_stuck_assignments
from socialflow.teams.service import set_member_status
from tests.factories import build_team


def test_assigned_requests_cover_role_and_direct_assignments(team) -> None:
    supervisor = team.add("supervisor")
    named = team.add("internal_reviewer")
    creator = team.add("content_creator")
    team.workflow(StepSpec(name="Supervisor", order=1, role="supervisor"), name="Open")
    direct_flow = team.workflow(
        StepSpec(name="Named", order=1, role="internal_reviewer", assigned_user_id=named.user_id),
        name="Direct",
    )

    first = team.post("Open review", author_user_id=creator.user_id)
    second = team.post("Direct review", author_user_id=creator.user_id)
    submit_for_approval(team.session, post_id=first.id, acting_user_id=creator.user_id)
    submit_for_approval(team.session, post_id=second.id, acting_user_id=creator.user_id, workflow_id=direct_flow.id)

    supervisor_queue = get_assigned_requests(team.session, team_id=team.team_id, acting_user_id=supervisor.user_id)
    named_queue = get_assigned_requests(team.session, team_id=team.team_id, acting_user_id=named.user_id)
    creator_queue = get_assigned_requests(team.session, team_id=team.team_id, acting_user_id=creator.user_id)

    assert [assignment.instance.post_id for assignment in supervisor_queue] == [first.id]
    assert [assignment.instance.post_id for assignment in named_queue] == [second.id]
    assert creator_queue == []

    mine = get_my_requests(team.session, team_id=team.team_id, acting_user_id=creator.user_id)
    assert {instance.post_id for instance in mine} == {first.id, second.id}


def test_status_filters(team) -> None:
    supervisor = team.add("supervisor")
    team.workflow(StepSpec(name="Supervisor", order=1, role="supervisor"))
    post = team.post()
    instance = submit_for_approval(team.session, post_id=post.id, acting_user_id=team.owner_user_id)
    review_assignment(
        team.session,
        assignment_id=instance.assignments[0].id,
        acting_user_id=supervisor.user_id,
        approve=True,
    )

    approved = get_assigned_requests(
        team.session,
        team_id=team.team_id,
        acting_user_id=supervisor.user_id,
        status="approved",
    )
    pending = get_assigned_requests(
        team.session,
        team_id=team.team_id,
        acting_user_id=supervisor.user_id,
        status="pending",
    )
    assert len(approved) == 1
    assert pending == []
    assert len(get_my_requests(team.session, team_id=team.team_id, acting_user_id=team.owner_user_id, status="APPROVED")) == 1

    with pytest.raises(ValidationError) as exc_info:
        get_my_requests(team.session, team_id=team.team_id, acting_user_id=team.owner_user_id, status="stalled")
    assert exc_info.value.code == "invalid_status_filter"


def test_queries_require_active_membership(team) -> None:
    analyst = team.add("analyst")
    set_member_status(
        team.session,
        team_id=team.team_id,
        acting_user_id=team.owner_user_id,
        membership_id=analyst.id,
        status="suspended",
    )

    with pytest.raises(ForbiddenError) as exc_info:
        get_assigned_requests(team.session, team_id=team.team_id, acting_user_id=analyst.user_id)
    assert exc_info.value.code == "team_access_denied"


def test_assignment_detail_is_limited_to_reviewers(team) -> None:
    supervisor = team.add("supervisor")
    analyst = team.add("analyst")
    team.workflow(StepSpec(name="Supervisor", order=1, role="supervisor"))
    post = team.post()
    instance = submit_for_approval(team.session, post_id=post.id, acting_user_id=team.owner_user_id)
    assignment_id = instance.assignments[0].id

    assert get_assignment(team.session, assignment_id=assignment_id, acting_user_id=supervisor.user_id).id == assignment_id
    with pytest.raises(ForbiddenError) as exc_info:
        get_assignment(team.session, assignment_id=assignment_id, acting_user_id=analyst.user_id)
    assert exc_info.value.code == "assignment_access_denied"


def test_stuck_report_lists_old_pending_assignments(team) -> None:
    team.add("supervisor")
    team.workflow(StepSpec(name="Supervisor", order=1, role="supervisor"))
    post = team.post()
    instance = submit_for_approval(team.session, post_id=post.id, acting_user_id=team.owner_user_id)

    assert find_stuck_assignments(team.session, team_id=team.team_id) == []

    later = datetime.now(timezone.utc) + timedelta(hours=72)
    stuck = find_stuck_assignments(team.session, team_id=team.team_id, now=later)
    assert [item.assignment_id for item in stuck] == [instance.assignments[0].id]
    assert stuck[0].post_id == post.id
    assert stuck[0].step_role == "supervisor"
    assert stuck[0].waiting_hours >= 71

    other = build_team(team.session, name="globex", owner_email="owner@globex.io")
    assert find_stuck_assignments(team.session, team_id=other.team_id, now=later) == []
    assert find_stuck_assignments(team.session, now=later, older_than_hours=100) == []
