from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional
import uuid

from fastapi.testclient import TestClient
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.orm import Session

from socialflow.approvals.workflows import StepSpec, create_workflow
from socialflow.notifications.email_client import EmailClientError
from socialflow.posts.service import create_post
from socialflow.storage.models import ApprovalWorkflow, Membership, Post
from socialflow.teams.service import add_member, create_team_with_owner


OWNER_EMAIL = "owner@acme.io"
OWNER_PASSWORD = "owner-secret-123"
MEMBER_PASSWORD = "member-secret-123"


class FakeRedis:
    def __init__(self) -> None:
        self._store: Dict[str, str] = {}
        self.expirations: Dict[str, int] = {}
        self.unavailable = False

    def _check(self) -> None:
        if self.unavailable:
            raise RedisConnectionError("redis unavailable")

    def set(self, key: str, value: str, nx: bool = False, ex: int | None = None):
        self._check()
        del ex
        if nx and key in self._store:
            return False
        self._store[key] = str(value)
        return True

    def get(self, key: str):
        self._check()
        return self._store.get(key)

    def incr(self, key: str) -> int:
        self._check()
        value = int(self._store.get(key, 0)) + 1
        self._store[key] = str(value)
        return value

    def expire(self, key: str, seconds: int) -> bool:
        self._check()
        self.expirations[key] = seconds
        return key in self._store

    def eval(self, script: str, numkeys: int, key: str, token: str):
        del script, numkeys
        if self._store.get(key) == token:
            self._store.pop(key, None)
            return 1
        return 0


@dataclass
class FakeEmailClient:
    failing_recipients: set[str] = field(default_factory=set)
    sent: List[dict] = field(default_factory=list)

    def send_email(self, *, from_address: str, to: List[str], subject: str, text: str, tags=None):
        if any(recipient in self.failing_recipients for recipient in to):
            raise EmailClientError("email_provider_request_failed status=503 detail=unavailable")
        self.sent.append({"from": from_address, "to": list(to), "subject": subject, "text": text, "tags": tags})
        return {"id": f"email-{len(self.sent)}"}


@dataclass
class TeamContext:
    session: Session
    team_id: str
    owner_user_id: str
    owner_membership_id: str

    def add(
        self,
        role: Optional[str] = None,
        *,
        email: Optional[str] = None,
        custom_role_id: Optional[str] = None,
    ) -> Membership:
        label = role or "custom"
        _, membership = add_member(
            self.session,
            team_id=self.team_id,
            acting_user_id=self.owner_user_id,
            email=email or f"{label}-{uuid.uuid4().hex[:8]}@acme.io",
            password=MEMBER_PASSWORD,
            role=role,
            custom_role_id=custom_role_id,
        )
        return membership

    def workflow(self, *steps: StepSpec, name: str = "Review") -> ApprovalWorkflow:
        return create_workflow(
            self.session,
            team_id=self.team_id,
            acting_user_id=self.owner_user_id,
            name=name,
            steps=list(steps),
        )

    def post(self, content: str = "Launch week is here", *, author_user_id: Optional[str] = None) -> Post:
        return create_post(
            self.session,
            team_id=self.team_id,
            acting_user_id=author_user_id or self.owner_user_id,
            content=content,
        )


def build_team(session: Session, *, name: str = "acme", owner_email: str = OWNER_EMAIL) -> TeamContext:
    team, owner, membership = create_team_with_owner(
        session,
        team_name=name,
        owner_email=owner_email,
        owner_password=OWNER_PASSWORD,
    )
    return TeamContext(
        session=session,
        team_id=team.id,
        owner_user_id=owner.id,
        owner_membership_id=membership.id,
    )


def login(client: TestClient, *, email: str, password: str, team_id: str) -> dict[str, str]:
    response = client.post("/auth/login", json={"email": email, "password": password, "team_id": team_id})
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['access_token']}"}
