from __future__ import annotations

import pytest

from socialflow.core.errors import ConflictError, UnauthorizedError, ValidationError
from socialflow.teams.service import add_member, authenticate_team_user, create_team_with_owner
from tests.factories import OWNER_EMAIL, OWNER_PASSWORD, build_team, login


def test_existing_user_of_another_team_is_added_without_password(session) -> None:
    acme = build_team(session)
    globex = build_team(session, name="globex", owner_email="boss@globex.io")

    user, membership = add_member(
        session,
        team_id=globex.team_id,
        acting_user_id=globex.owner_user_id,
        email=OWNER_EMAIL,
        role="analyst",
    )

    assert user.id == acme.owner_user_id
    assert membership.team_id == globex.team_id
    assert membership.role == "analyst"
    # Credentials are untouched and now open the second team as well.
    authenticated, _ = authenticate_team_user(
        session,
        email=OWNER_EMAIL,
        password=OWNER_PASSWORD,
        team_id=globex.team_id,
    )
    assert authenticated.id == acme.owner_user_id


def test_password_for_existing_user_is_neither_checked_nor_applied(session) -> None:
    build_team(session)
    globex = build_team(session, name="globex", owner_email="boss@globex.io")

    _, membership = add_member(
        session,
        team_id=globex.team_id,
        acting_user_id=globex.owner_user_id,
        email=OWNER_EMAIL,
        password="wrong-guess-1",
        role="analyst",
    )

    assert membership.is_active
    with pytest.raises(UnauthorizedError):
        authenticate_team_user(session, email=OWNER_EMAIL, password="wrong-guess-1", team_id=globex.team_id)


def test_duplicate_membership_is_rejected(team) -> None:
    analyst = team.add("analyst", email="analyst@acme.io")

    with pytest.raises(ConflictError) as exc_info:
        add_member(
            team.session,
            team_id=team.team_id,
            acting_user_id=team.owner_user_id,
            email="ANALYST@acme.io",
            role="supervisor",
        )

    assert exc_info.value.code == "member_exists"
    assert analyst.role == "analyst"


def test_new_user_needs_a_password(team) -> None:
    with pytest.raises(ValidationError) as exc_info:
        add_member(
            team.session,
            team_id=team.team_id,
            acting_user_id=team.owner_user_id,
            email="newcomer@acme.io",
            role="analyst",
        )

    assert exc_info.value.code == "password_required"


def test_existing_account_founds_second_team_only_with_its_password(session) -> None:
    build_team(session)

    with pytest.raises(UnauthorizedError) as exc_info:
        create_team_with_owner(session, team_name="globex", owner_email=OWNER_EMAIL, owner_password="wrong-guess-1")
    assert exc_info.value.code == "invalid_credentials"

    team, owner, membership = create_team_with_owner(
        session,
        team_name="globex",
        owner_email=OWNER_EMAIL,
        owner_password=OWNER_PASSWORD,
    )
    assert membership.team_id == team.id
    assert membership.user_id == owner.id


def test_member_added_over_http_without_password(client) -> None:
    acme = client.post(
        "/teams",
        json={"name": "acme", "owner_email": OWNER_EMAIL, "owner_password": OWNER_PASSWORD},
    ).json()
    globex = client.post(
        "/teams",
        json={"name": "globex", "owner_email": "boss@globex.io", "owner_password": OWNER_PASSWORD},
    ).json()
    headers = login(client, email="boss@globex.io", password=OWNER_PASSWORD, team_id=globex["team_id"])

    response = client.post("/teams/members", headers=headers, json={"email": OWNER_EMAIL, "role": "analyst"})

    assert response.status_code == 201, response.text
    assert response.json()["user_id"] == acme["owner_user_id"]
