from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.database import Base
from app.platform.accounts.models import UserAccount
from app.platform.security.roles import Role
from app.teams.directory import membership_directory
from app.teams.models import Enterprise, MembershipStatus, TeamMembership


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


def _account(db: Session, email: str) -> UserAccount:
    account = UserAccount(email=email)
    db.add(account)
    db.commit()
    return account


def _enterprise(db: Session, name: str = "Acme") -> Enterprise:
    enterprise = Enterprise(name=name)
    db.add(enterprise)
    db.commit()
    return enterprise


def test_role_of_only_sees_active_memberships(db_session: Session) -> None:
    enterprise = _enterprise(db_session)
    user = _account(db_session, "member@example.com")
    membership = membership_directory.upsert(db_session, enterprise_id=enterprise.id, user_id=user.id, role=Role.EDITOR)
    db_session.commit()

    assert membership_directory.role_of(db_session, user.id, enterprise.id) is Role.EDITOR

    membership_directory.set_status(db_session, membership.id, MembershipStatus.INACTIVE)
    db_session.commit()

    assert membership_directory.role_of(db_session, user.id, enterprise.id) is None
    assert membership_directory.get_any(db_session, user.id, enterprise.id) is not None


def test_upsert_reactivates_the_same_row(db_session: Session) -> None:
    enterprise = _enterprise(db_session)
    user = _account(db_session, "rejoin@example.com")
    first = membership_directory.upsert(db_session, enterprise_id=enterprise.id, user_id=user.id, role=Role.VIEWER)
    membership_directory.set_status(db_session, first.id, MembershipStatus.INACTIVE)
    db_session.commit()

    second = membership_directory.upsert(db_session, enterprise_id=enterprise.id, user_id=user.id, role=Role.ADMIN)
    db_session.commit()

    assert second.id == first.id
    assert second.status == MembershipStatus.ACTIVE
    assert second.role == Role.ADMIN
    rows = db_session.scalar(select(func.count()).select_from(TeamMembership).where(TeamMembership.user_id == user.id))
    assert rows == 1


def test_count_active_owners_ignores_inactive_and_other_roles(db_session: Session) -> None:
    enterprise = _enterprise(db_session)
    owner = _account(db_session, "owner@example.com")
    former_owner = _account(db_session, "former@example.com")
    admin = _account(db_session, "admin@example.com")
    membership_directory.upsert(db_session, enterprise_id=enterprise.id, user_id=owner.id, role=Role.OWNER)
    former = membership_directory.upsert(db_session, enterprise_id=enterprise.id, user_id=former_owner.id, role=Role.OWNER)
    membership_directory.upsert(db_session, enterprise_id=enterprise.id, user_id=admin.id, role=Role.ADMIN)
    membership_directory.set_status(db_session, former.id, MembershipStatus.INACTIVE)
    db_session.commit()

    assert membership_directory.count_active_owners(db_session, enterprise.id) == 1
    assert len(membership_directory.list_active(db_session, enterprise.id)) == 2


def test_list_for_user_spans_enterprises(db_session: Session) -> None:
    user = _account(db_session, "multi@example.com")
    first = _enterprise(db_session, "First")
    second = _enterprise(db_session, "Second")
    membership_directory.upsert(db_session, enterprise_id=first.id, user_id=user.id, role=Role.VIEWER)
    membership_directory.upsert(db_session, enterprise_id=second.id, user_id=user.id, role=Role.OWNER)
    db_session.commit()

    names = sorted(item.enterprise.name for item in membership_directory.list_for_user(db_session, user.id))
    assert names == ["First", "Second"]


def test_set_role_updates_owner_count(db_session: Session) -> None:
    enterprise = _enterprise(db_session)
    user = _account(db_session, "promoted@example.com")
    membership = membership_directory.upsert(db_session, enterprise_id=enterprise.id, user_id=user.id, role=Role.ADMIN)
    db_session.commit()

    updated = membership_directory.set_role(db_session, membership.id, Role.OWNER)
    db_session.commit()

    assert updated is not None and updated.id == membership.id
    assert membership_directory.role_of(db_session, user.id, enterprise.id) is Role.OWNER
    assert membership_directory.count_active_owners(db_session, enterprise.id) == 1


def test_writes_to_unknown_membership_return_none(db_session: Session) -> None:
    missing = uuid.uuid4()

    assert membership_directory.set_role(db_session, missing, Role.EDITOR) is None
    assert membership_directory.set_status(db_session, missing, MembershipStatus.INACTIVE) is None
