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
from app.platform.security.roles import Role
from app.teams.directory import MembershipDirectory, membership_directory
from app.teams.models import TeamMembership


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


def _account(db: Session, email: str) -> UserAccount:
    account = UserAccount(email=email, email_verified=True)
    db.add(account)
    db.commit()
    return account


def _act_as(actor: dict[str, str], account: UserAccount) -> None:
    actor["sub"] = str(account.id)


def _member(db: Session, enterprise_id: str, email: str, role: Role) -> tuple[UserAccount, TeamMembership]:
    account = _account(db, email)
    membership = membership_directory.upsert(db, enterprise_id=uuid.UUID(enterprise_id), user_id=account.id, role=role)
    db.commit()
    return account, membership


def _create_enterprise(client: TestClient, name: str = "Acme") -> dict:
    response = client.post("/api/enterprises", json={"name": name, "contact_email": "Team@Acme.example.com"})
    assert response.status_code == 201
    return response.json()


def test_creator_becomes_owner(client: TestClient, db_session: Session, actor: dict[str, str]) -> None:
    owner = _account(db_session, "owner@acme.example.com")
    _act_as(actor, owner)

    enterprise = _create_enterprise(client)
    assert enterprise["contact_email"] == "team@acme.example.com"

    team = client.get(f"/api/enterprises/{enterprise['id']}/team")
    assert team.status_code == 200
    [member] = team.json()
    assert member["role"] == "owner"
    assert member["email"] == "owner@acme.example.com"

    memberships = client.get("/api/me/memberships")
    assert memberships.status_code == 200
    assert memberships.json()[0]["enterprise_name"] == "Acme"


def test_team_is_listed_by_role_rank(client: TestClient, db_session: Session, actor: dict[str, str]) -> None:
    owner = _account(db_session, "owner@acme.example.com")
    _act_as(actor, owner)
    enterprise = _create_enterprise(client)
    _member(db_session, enterprise["id"], "viewer@acme.example.com", Role.VIEWER)
    _member(db_session, enterprise["id"], "admin@acme.example.com", Role.ADMIN)

    roles = [item["role"] for item in client.get(f"/api/enterprises/{enterprise['id']}/team").json()]
    assert roles == ["owner", "admin", "viewer"]


def test_admin_can_change_lower_roles_but_not_grant_owner(
    client: TestClient,
    db_session: Session,
    actor: dict[str, str],
) -> None:
    owner = _account(db_session, "owner@acme.example.com")
    _act_as(actor, owner)
    enterprise = _create_enterprise(client)
    admin, _ = _member(db_session, enterprise["id"], "admin@acme.example.com", Role.ADMIN)
    _, viewer = _member(db_session, enterprise["id"], "viewer@acme.example.com", Role.VIEWER)

    _act_as(actor, admin)
    promoted = client.patch(f"/api/enterprises/{enterprise['id']}/team/{viewer.id}", json={"role": "editor"})
    assert promoted.status_code == 200
    assert promoted.json()["role"] == "editor"

    escalated = client.patch(f"/api/enterprises/{enterprise['id']}/team/{viewer.id}", json={"role": "owner"})
    assert escalated.status_code == 403
    assert escalated.json()["code"] == "forbidden"
    assert escalated.json()["details"]["required_role"] == "owner"


def test_editor_cannot_manage_team(client: TestClient, db_session: Session, actor: dict[str, str]) -> None:
    owner = _account(db_session, "owner@acme.example.com")
    _act_as(actor, owner)
    enterprise = _create_enterprise(client)
    editor, editor_membership = _member(db_session, enterprise["id"], "editor@acme.example.com", Role.EDITOR)

    _act_as(actor, editor)
    response = client.patch(f"/api/enterprises/{enterprise['id']}/team/{editor_membership.id}", json={"role": "admin"})

    assert response.status_code == 403
    assert response.json()["details"] == {"current_role": "editor", "required_role": "admin"}


def test_last_owner_cannot_demote_or_remove_self(client: TestClient, db_session: Session, actor: dict[str, str]) -> None:
    owner = _account(db_session, "owner@acme.example.com")
    _act_as(actor, owner)
    enterprise = _create_enterprise(client)
    [owner_member] = client.get(f"/api/enterprises/{enterprise['id']}/team").json()

    demote = client.patch(f"/api/enterprises/{enterprise['id']}/team/{owner_member['id']}", json={"role": "admin"})
    assert demote.status_code == 409
    assert demote.json()["code"] == "last_owner_violation"

    remove = client.delete(f"/api/enterprises/{enterprise['id']}/team/{owner_member['id']}")
    assert remove.status_code == 409
    assert membership_directory.count_active_owners(db_session, uuid.UUID(enterprise["id"])) == 1


def test_owner_may_step_down_when_another_owner_exists(
    client: TestClient,
    db_session: Session,
    actor: dict[str, str],
) -> None:
    owner = _account(db_session, "owner@acme.example.com")
    _act_as(actor, owner)
    enterprise = _create_enterprise(client)
    _member(db_session, enterprise["id"], "coowner@acme.example.com", Role.OWNER)
    owner_member = membership_directory.get_active(db_session, owner.id, uuid.UUID(enterprise["id"]))

    response = client.patch(f"/api/enterprises/{enterprise['id']}/team/{owner_member.id}", json={"role": "admin"})

    assert response.status_code == 200
    assert response.json()["role"] == "admin"
    assert membership_directory.count_active_owners(db_session, uuid.UUID(enterprise["id"])) == 1


def test_removed_member_loses_access(client: TestClient, db_session: Session, actor: dict[str, str]) -> None:
    owner = _account(db_session, "owner@acme.example.com")
    _act_as(actor, owner)
    enterprise = _create_enterprise(client)
    viewer, viewer_membership = _member(db_session, enterprise["id"], "viewer@acme.example.com", Role.VIEWER)

    removed = client.delete(f"/api/enterprises/{enterprise['id']}/team/{viewer_membership.id}")
    assert removed.status_code == 200
    assert removed.json()["status"] == "inactive"

    _act_as(actor, viewer)
    assert client.get(f"/api/enterprises/{enterprise['id']}/team").status_code == 404


def test_admin_cannot_remove_owner(client: TestClient, db_session: Session, actor: dict[str, str]) -> None:
    owner = _account(db_session, "owner@acme.example.com")
    _act_as(actor, owner)
    enterprise = _create_enterprise(client)
    _member(db_session, enterprise["id"], "coowner@acme.example.com", Role.OWNER)
    admin, _ = _member(db_session, enterprise["id"], "admin@acme.example.com", Role.ADMIN)
    owner_member = membership_directory.get_active(db_session, owner.id, uuid.UUID(enterprise["id"]))

    _act_as(actor, admin)
    response = client.delete(f"/api/enterprises/{enterprise['id']}/team/{owner_member.id}")

    assert response.status_code == 403


def test_membership_from_another_enterprise_is_cross_tenant(
    client: TestClient,
    db_session: Session,
    actor: dict[str, str],
) -> None:
    owner = _account(db_session, "owner@acme.example.com")
    _act_as(actor, owner)
    first = _create_enterprise(client, "First")
    second = _create_enterprise(client, "Second")
    _, foreign = _member(db_session, second["id"], "member@second.example.com", Role.VIEWER)

    response = client.patch(f"/api/enterprises/{first['id']}/team/{foreign.id}", json={"role": "editor"})

    assert response.status_code == 403
    assert response.json()["code"] == "cross_tenant"


def test_unknown_membership_is_not_found(client: TestClient, db_session: Session, actor: dict[str, str]) -> None:
    owner = _account(db_session, "owner@acme.example.com")
    _act_as(actor, owner)
    enterprise = _create_enterprise(client)

    response = client.delete(f"/api/enterprises/{enterprise['id']}/team/{uuid.uuid4()}")

    assert response.status_code == 404


def test_role_change_and_removal_are_written_through_the_directory(
    client: TestClient,
    db_session: Session,
    actor: dict[str, str],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    owner = _account(db_session, "owner@acme.example.com")
    _act_as(actor, owner)
    enterprise = _create_enterprise(client)
    _, viewer = _member(db_session, enterprise["id"], "viewer@acme.example.com", Role.VIEWER)

    writes: list[tuple[str, uuid.UUID, str]] = []
    set_role = MembershipDirectory.set_role
    set_status = MembershipDirectory.set_status

    def record_role(self, session, membership_id, role):  # type: ignore[no-untyped-def]
        writes.append(("role", membership_id, role.value))
        return set_role(self, session, membership_id, role)

    def record_status(self, session, membership_id, status):  # type: ignore[no-untyped-def]
        writes.append(("status", membership_id, status.value))
        return set_status(self, session, membership_id, status)

    monkeypatch.setattr(MembershipDirectory, "set_role", record_role)
    monkeypatch.setattr(MembershipDirectory, "set_status", record_status)

    assert client.patch(f"/api/enterprises/{enterprise['id']}/team/{viewer.id}", json={"role": "admin"}).status_code == 200
    assert client.delete(f"/api/enterprises/{enterprise['id']}/team/{viewer.id}").status_code == 200

    assert writes == [("role", viewer.id, "admin"), ("status", viewer.id, "inactive")]
