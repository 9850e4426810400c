from __future__ import annotations

from datetime import datetime, timedelta, timezone
import json

import pytest
from sqlalchemy import select

from socialflow.core.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from socialflow.notifications.dispatcher import render_message
from socialflow.permissions.resolver import can
from socialflow.storage.db import transaction
from socialflow.storage.models import NotificationOutbox
from socialflow.teams.invitations import (
    accept_invitation,
    cancel_invitation,
    invite_member,
    list_my_invitations,
    list_team_invitations,
    register_with_invitation,
    reject_invitation,
)
from tests.factories import OWNER_EMAIL, OWNER_PASSWORD, build_team, login


def _invite(team, email: str = "newcomer@acme.io", role: str = "analyst"):
    return invite_member(
        team.session,
        team_id=team.team_id,
        acting_user_id=team.owner_user_id,
        email=email,
        role=role,
    )


def _invitation_emails(session) -> list[NotificationOutbox]:
    return list(
        session.scalars(select(NotificationOutbox).where(NotificationOutbox.kind == "team_invitation")).all()
    )


def test_invite_queues_email_with_accept_link(team) -> None:
    issued = _invite(team, email="Newcomer@Acme.io")

    assert issued.invitation.status == "pending"
    assert issued.invitation.email == "newcomer@acme.io"
    rows = _invitation_emails(team.session)
    assert len(rows) == 1
    assert rows[0].recipient_email == "newcomer@acme.io"
    payload = json.loads(rows[0].payload_json)
    assert payload["team_name"] == "acme"
    assert payload["accept_url"] == f"https://app.socialflow.io/invitations/{issued.token}"

    subject, text = render_message("team_invitation", payload, public_base_url="https://app.socialflow.io")
    assert subject == "You are invited to join acme"
    assert issued.token in text


def test_second_pending_invitation_for_same_address_conflicts(team) -> None:
    first = _invite(team)

    with pytest.raises(ConflictError) as exc_info:
        _invite(team, email="NEWCOMER@acme.io", role="supervisor")

    assert exc_info.value.code == "invitation_exists"
    assert exc_info.value.details["invitation_id"] == first.invitation.id
    assert len(_invitation_emails(team.session)) == 1


def test_members_and_owners_cannot_be_invited(team) -> None:
    team.add("analyst", email="analyst@acme.io")

    with pytest.raises(ConflictError) as exc_info:
        _invite(team, email="analyst@acme.io")
    assert exc_info.value.code == "member_exists"

    with pytest.raises(ValidationError) as exc_info:
        _invite(team, role="owner")
    assert exc_info.value.code == "invalid_invitation_role"


def test_inviting_requires_member_invite_permission(team) -> None:
    analyst = team.add("analyst")

    with pytest.raises(ForbiddenError):
        invite_member(
            team.session,
            team_id=team.team_id,
            acting_user_id=analyst.user_id,
            email="newcomer@acme.io",
            role="analyst",
        )


def test_existing_user_accepts_and_gains_role_permissions(session) -> None:
    acme = build_team(session)
    globex = build_team(session, name="globex", owner_email="boss@globex.io")
    issued = _invite(globex, email=OWNER_EMAIL, role="client_reviewer")

    assert [invitation.id for invitation in list_my_invitations(session, user_id=acme.owner_user_id)] == [
        issued.invitation.id
    ]

    membership = accept_invitation(session, invitation_id=issued.invitation.id, user_id=acme.owner_user_id)

    assert membership.team_id == globex.team_id
    assert membership.role == "client_reviewer"
    assert can(session, acme.owner_user_id, globex.team_id, "content.approve") is True
    session.refresh(issued.invitation)
    assert issued.invitation.status == "accepted"
    assert issued.invitation.pending_email is None
    assert list_my_invitations(session, user_id=acme.owner_user_id) == []


def test_invitation_cannot_be_accepted_by_someone_else(team) -> None:
    issued = _invite(team)
    bystander = team.add("analyst")

    with pytest.raises(ForbiddenError) as exc_info:
        accept_invitation(team.session, invitation_id=issued.invitation.id, user_id=bystander.user_id)

    assert exc_info.value.code == "invitation_not_for_user"


def test_rejected_invitation_is_closed_for_acceptance(session) -> None:
    acme = build_team(session)
    globex = build_team(session, name="globex", owner_email="boss@globex.io")
    issued = _invite(globex, email=OWNER_EMAIL)

    rejected = reject_invitation(session, invitation_id=issued.invitation.id, user_id=acme.owner_user_id)
    assert rejected.status == "rejected"

    with pytest.raises(ConflictError) as exc_info:
        accept_invitation(session, invitation_id=issued.invitation.id, user_id=acme.owner_user_id)
    assert exc_info.value.code == "invitation_processed"

    # A processed invitation no longer blocks a fresh one.
    assert _invite(globex, email=OWNER_EMAIL).invitation.id != issued.invitation.id


def test_cancel_closes_pending_invitation(team) -> None:
    issued = _invite(team)

    cancelled = cancel_invitation(
        team.session,
        team_id=team.team_id,
        acting_user_id=team.owner_user_id,
        invitation_id=issued.invitation.id,
    )

    assert cancelled.status == "cancelled"
    assert list_team_invitations(team.session, team_id=team.team_id, acting_user_id=team.owner_user_id) == []
    history = list_team_invitations(
        team.session,
        team_id=team.team_id,
        acting_user_id=team.owner_user_id,
        include_processed=True,
    )
    assert [invitation.id for invitation in history] == [issued.invitation.id]
    with pytest.raises(ConflictError) as exc_info:
        cancel_invitation(
            team.session,
            team_id=team.team_id,
            acting_user_id=team.owner_user_id,
            invitation_id=issued.invitation.id,
        )
    assert exc_info.value.code == "invitation_processed"


def test_cancel_is_scoped_to_the_owning_team(session) -> None:
    acme = build_team(session)
    globex = build_team(session, name="globex", owner_email="boss@globex.io")
    issued = _invite(acme)

    with pytest.raises(NotFoundError):
        cancel_invitation(
            session,
            team_id=globex.team_id,
            acting_user_id=globex.owner_user_id,
            invitation_id=issued.invitation.id,
        )


def test_register_with_token_creates_account_and_membership(team) -> None:
    issued = _invite(team, role="supervisor")

    invitation, membership = register_with_invitation(team.session, token=issued.token, password="newcomer-pass-1")

    assert invitation.id == issued.invitation.id
    assert invitation.status == "accepted"
    assert membership.role == "supervisor"
    assert membership.user.email == "newcomer@acme.io"
    with pytest.raises(NotFoundError) as exc_info:
        register_with_invitation(team.session, token=issued.token, password="newcomer-pass-1")
    assert exc_info.value.code == "invalid_invitation"


def test_register_refuses_existing_account(session) -> None:
    build_team(session)
    globex = build_team(session, name="globex", owner_email="boss@globex.io")
    issued = _invite(globex, email=OWNER_EMAIL)

    with pytest.raises(ConflictError) as exc_info:
        register_with_invitation(session, token=issued.token, password="attacker-pass-1")

    assert exc_info.value.code == "account_exists"


def test_expired_invitation_cannot_be_accepted_and_can_be_reissued(session) -> None:
    acme = build_team(session)
    globex = build_team(session, name="globex", owner_email="boss@globex.io")
    issued = _invite(globex, email=OWNER_EMAIL)
    with transaction(session):
        issued.invitation.expires_at = datetime.now(timezone.utc) - timedelta(minutes=1)

    with pytest.raises(ConflictError) as exc_info:
        accept_invitation(session, invitation_id=issued.invitation.id, user_id=acme.owner_user_id)
    assert exc_info.value.code == "invitation_expired"

    reissued = _invite(globex, email=OWNER_EMAIL)
    session.refresh(issued.invitation)
    assert issued.invitation.status == "expired"
    assert reissued.invitation.status == "pending"


def test_invitation_flow_over_http(client, session_factory) -> None:
    team = client.post(
        "/teams",
        json={"name": "acme", "owner_email": OWNER_EMAIL, "owner_password": OWNER_PASSWORD},
    ).json()
    owner = login(client, email=OWNER_EMAIL, password=OWNER_PASSWORD, team_id=team["team_id"])

    created = client.post(
        "/teams/invitations",
        headers=owner,
        json={"email": "writer@acme.io", "role": "content_creator"},
    )
    assert created.status_code == 201, created.text
    assert "token" not in created.json()
    duplicate = client.post(
        "/teams/invitations",
        headers=owner,
        json={"email": "writer@acme.io", "role": "analyst"},
    )
    assert duplicate.status_code == 409
    assert duplicate.json()["error"]["code"] == "invitation_exists"

    session = session_factory()
    try:
        row = session.scalar(select(NotificationOutbox).where(NotificationOutbox.kind == "team_invitation"))
        token = json.loads(row.payload_json)["accept_url"].rsplit("/", 1)[1]
    finally:
        session.close()

    registered = client.post("/invitations/register", json={"token": token, "password": "writer-pass-123"})
    assert registered.status_code == 201, registered.text
    assert registered.json()["invitation_id"] == created.json()["id"]
    assert registered.json()["role"] == "content_creator"

    writer = login(client, email="writer@acme.io", password="writer-pass-123", team_id=team["team_id"])
    assert client.get("/teams/current", headers=writer).json()["my_role"] == "content_creator"
    listed = client.get("/teams/invitations", headers=owner, params={"include_processed": "true"})
    assert [item["status"] for item in listed.json()] == ["accepted"]


def test_invitee_accepts_over_http(client) -> None:
    acme = client.post(
        "/teams",
        json={"name": "acme", "owner_email": OWNER_EMAIL, "owner_password": OWNER_PASSWORD},
    ).json()
    globex = client.post(
        "/teams",
        json={"name": "globex", "owner_email": "boss@globex.io", "owner_password": OWNER_PASSWORD},
    ).json()
    boss = login(client, email="boss@globex.io", password=OWNER_PASSWORD, team_id=globex["team_id"])
    invitation = client.post(
        "/teams/invitations",
        headers=boss,
        json={"email": OWNER_EMAIL, "role": "analyst"},
    ).json()
    invitee = login(client, email=OWNER_EMAIL, password=OWNER_PASSWORD, team_id=acme["team_id"])

    mine = client.get("/invitations/mine", headers=invitee)
    assert [item["id"] for item in mine.json()] == [invitation["id"]]

    accepted = client.post(f"/invitations/{invitation['id']}/accept", headers=invitee)
    assert accepted.status_code == 200, accepted.text
    assert accepted.json()["team_id"] == globex["team_id"]
    assert accepted.json()["role"] == "analyst"

    again = client.post(f"/invitations/{invitation['id']}/reject", headers=invitee)
    assert again.status_code == 409
    assert again.json()["error"]["code"] == "invitation_processed"
    login(client, email=OWNER_EMAIL, password=OWNER_PASSWORD, team_id=globex["team_id"])
