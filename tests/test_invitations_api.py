from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.auth import ANONYMOUS_SUBJECT, AuthUser, get_current_user
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter
from app.platform.accounts.models import UserAccount
from app.teams.models import EnterpriseInvitation


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    monkeypatch.setenv("CELERY_TASK_ALWAYS_EAGER", "true")
    monkeypatch.setenv("PUBLIC_BASE_URL", "https://crm.example.test/")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def actor() -> dict[str, str]:
    return {"sub": ANONYMOUS_SUBJECT}


@pytest.fixture()
def client(db_session: Session, actor: dict[str, str]) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> AuthUser:
        return AuthUser(sub=actor["sub"], roles=["user"])

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _login(db: Session, actor: dict[str, str], email: str) -> UserAccount:
    account = UserAccount(email=email, email_verified=True)
    db.add(account)
    db.commit()
    actor["sub"] = str(account.id)
    return account


def _enterprise_with_owner(client: TestClient, db: Session, actor: dict[str, str]) -> tuple[UserAccount, str]:
    owner = _login(db, actor, "owner@acme.example.com")
    response = client.post("/api/enterprises", json={"name": "Acme"})
    assert response.status_code == 201
    return owner, response.json()["id"]


def _invite(client: TestClient, enterprise_id: str, email: str, role: str = "editor") -> dict:
    response = client.post(f"/api/enterprises/{enterprise_id}/invitations", json={"email": email, "role": role})
    assert response.status_code == 201
    return response.json()


def test_invite_and_accept_flow(
    client: TestClient,
    db_session: Session,
    actor: dict[str, str],
    sent_notifications: list[dict[str, str]],
) -> None:
    owner, enterprise_id = _enterprise_with_owner(client, db_session, actor)
    created = _invite(client, enterprise_id, "New.Hire@Acme.example.com")

    assert created["email"] == "new.hire@acme.example.com"
    assert created["status"] == "pending"
    assert created["accept_url"].startswith("https://crm.example.test/team/invitations/accept/")
    assert "token" not in created
    token = created["accept_url"].rsplit("/", 1)[-1]

    [sent] = sent_notifications
    assert sent["to"] == "new.hire@acme.example.com"
    assert created["accept_url"] in sent["body"]

    pending = client.get(f"/api/enterprises/{enterprise_id}/invitations")
    assert [item["id"] for item in pending.json()] == [created["id"]]

    hire = _login(db_session, actor, "new.hire@acme.example.com")
    inbox = client.get("/api/me/invitations")
    assert [item["id"] for item in inbox.json()] == [created["id"]]

    accepted = client.post(f"/api/invitations/{token}/accept")
    assert accepted.status_code == 200
    body = accepted.json()
    assert body["created"] is True
    assert body["membership"]["role"] == "editor"
    assert body["membership"]["user_id"] == str(hire.id)
    assert body["membership"]["invited_by"] == str(owner.id)

    replay = client.post(f"/api/invitations/{token}/accept")
    assert replay.status_code == 200
    assert replay.json()["created"] is False
    assert replay.json()["membership"]["id"] == body["membership"]["id"]


def test_invitation_endpoints_require_admin(client: TestClient, db_session: Session, actor: dict[str, str]) -> None:
    _, enterprise_id = _enterprise_with_owner(client, db_session, actor)
    created = _invite(client, enterprise_id, "viewer@acme.example.com", role="viewer")
    token = created["accept_url"].rsplit("/", 1)[-1]
    _login(db_session, actor, "viewer@acme.example.com")
    assert client.post(f"/api/invitations/{token}/accept").status_code == 200

    response = client.post(f"/api/enterprises/{enterprise_id}/invitations", json={"email": "x@acme.example.com"})

    assert response.status_code == 403
    assert response.json()["details"]["required_role"] == "admin"


def test_owner_role_is_rejected_by_validation(client: TestClient, db_session: Session, actor: dict[str, str]) -> None:
    _, enterprise_id = _enterprise_with_owner(client, db_session, actor)

    response = client.post(
        f"/api/enterprises/{enterprise_id}/invitations",
        json={"email": "boss@acme.example.com", "role": "owner"},
    )

    assert response.status_code == 422


def test_duplicate_and_existing_member_conflicts(client: TestClient, db_session: Session, actor: dict[str, str]) -> None:
    _, enterprise_id = _enterprise_with_owner(client, db_session, actor)
    _invite(client, enterprise_id, "dup@acme.example.com")

    duplicate = client.post(f"/api/enterprises/{enterprise_id}/invitations", json={"email": "dup@acme.example.com"})
    assert duplicate.status_code == 409
    assert duplicate.json()["code"] == "duplicate_invitation"

    member = client.post(f"/api/enterprises/{enterprise_id}/invitations", json={"email": "owner@acme.example.com"})
    assert member.status_code == 409
    assert member.json()["code"] == "already_member"


def test_email_mismatch_and_unknown_token(client: TestClient, db_session: Session, actor: dict[str, str]) -> None:
    _, enterprise_id = _enterprise_with_owner(client, db_session, actor)
    created = _invite(client, enterprise_id, "intended@acme.example.com")
    token = created["accept_url"].rsplit("/", 1)[-1]

    _login(db_session, actor, "someone.else@acme.example.com")
    mismatch = client.post(f"/api/invitations/{token}/accept")
    assert mismatch.status_code == 403
    assert mismatch.json()["code"] == "email_mismatch"

    unknown = client.post("/api/invitations/not-a-real-token/accept")
    assert unknown.status_code == 404


def test_cancelled_invitation_cannot_be_accepted(client: TestClient, db_session: Session, actor: dict[str, str]) -> None:
    _, enterprise_id = _enterprise_with_owner(client, db_session, actor)
    created = _invite(client, enterprise_id, "late@acme.example.com")
    token = created["accept_url"].rsplit("/", 1)[-1]

    cancelled = client.delete(f"/api/enterprises/{enterprise_id}/invitations/{created['id']}")
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "cancelled"

    _login(db_session, actor, "late@acme.example.com")
    response = client.post(f"/api/invitations/{token}/accept")
    assert response.status_code == 400
    assert response.json()["code"] == "already_processed"


def test_cancel_from_another_enterprise_is_cross_tenant(
    client: TestClient,
    db_session: Session,
    actor: dict[str, str],
) -> None:
    _, enterprise_id = _enterprise_with_owner(client, db_session, actor)
    other = client.post("/api/enterprises", json={"name": "Other"}).json()
    created = _invite(client, enterprise_id, "someone@acme.example.com")

    response = client.delete(f"/api/enterprises/{other['id']}/invitations/{created['id']}")

    assert response.status_code == 403
    assert response.json()["code"] == "cross_tenant"


def test_expired_invitation_returns_expired(client: TestClient, db_session: Session, actor: dict[str, str]) -> None:
    _, enterprise_id = _enterprise_with_owner(client, db_session, actor)
    created = _invite(client, enterprise_id, "slow@acme.example.com")
    token = created["accept_url"].rsplit("/", 1)[-1]
    invitation = db_session.get(EnterpriseInvitation, uuid.UUID(created["id"]))
    invitation.expires_at = invitation.created_at.replace(year=invitation.created_at.year - 1)
    db_session.commit()

    _login(db_session, actor, "slow@acme.example.com")
    response = client.post(f"/api/invitations/{token}/accept")

    assert response.status_code == 400
    assert response.json()["code"] == "expired"
    db_session.refresh(invitation)
    assert invitation.status == "expired"
