from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from app.platform.security.roles import Role
from app.teams.models import Enterprise, MembershipStatus, TeamMembership, utcnow


class MembershipDirectory:
    """Tenant-level membership lookups and writes.

    Writes are staged on the session and never committed here; the lifecycle
    services own the transaction so invariant checks stay atomic with the
    mutation.
    """

    def get_enterprise(self, session: Session, enterprise_id: uuid.UUID) -> Enterprise | None:
        return session.get(Enterprise, enterprise_id)

    def lock_enterprise(self, session: Session, enterprise_id: uuid.UUID) -> Enterprise | None:
        return session.scalar(select(Enterprise).where(Enterprise.id == enterprise_id).with_for_update())

    def get(self, session: Session, membership_id: uuid.UUID) -> TeamMembership | None:
        return session.get(TeamMembership, membership_id)

    def get_any(self, session: Session, user_id: uuid.UUID, enterprise_id: uuid.UUID) -> TeamMembership | None:
        return session.scalar(
            select(TeamMembership).where(
                TeamMembership.user_id == user_id,
                TeamMembership.enterprise_id == enterprise_id,
            )
        )

    def get_active(self, session: Session, user_id: uuid.UUID, enterprise_id: uuid.UUID) -> TeamMembership | None:
        membership = self.get_any(session, user_id, enterprise_id)
        if membership is None or membership.status != MembershipStatus.ACTIVE:
            return None
        return membership

    def role_of(self, session: Session, user_id: uuid.UUID, enterprise_id: uuid.UUID) -> Role | None:
        membership = self.get_active(session, user_id, enterprise_id)
        return Role(membership.role) if membership is not None else None

    def list_active(self, session: Session, enterprise_id: uuid.UUID) -> list[TeamMembership]:
        stmt = (
            select(TeamMembership)
            .where(
                TeamMembership.enterprise_id == enterprise_id,
                TeamMembership.status == MembershipStatus.ACTIVE.value,
            )
            .options(selectinload(TeamMembership.user))
        )
        return list(session.scalars(stmt).all())

    def list_for_user(self, session: Session, user_id: uuid.UUID) -> list[TeamMembership]:
        stmt = (
            select(TeamMembership)
            .where(
                TeamMembership.user_id == user_id,
                TeamMembership.status == MembershipStatus.ACTIVE.value,
            )
            .options(selectinload(TeamMembership.enterprise))
        )
        return list(session.scalars(stmt).all())

    def upsert(
        self,
        session: Session,
        *,
        enterprise_id: uuid.UUID,
        user_id: uuid.UUID,
        role: Role,
        invited_by: uuid.UUID | None = None,
        invited_at: datetime | None = None,
    ) -> TeamMembership:
        now = utcnow()
        membership = self.get_any(session, user_id, enterprise_id)
        if membership is None:
            membership = TeamMembership(
                enterprise_id=enterprise_id,
                user_id=user_id,
                role=role.value,
                status=MembershipStatus.ACTIVE.value,
                invited_by=invited_by,
                invited_at=invited_at,
                accepted_at=now,
            )
        else:
            membership.role = role.value
            membership.status = MembershipStatus.ACTIVE.value
            membership.invited_by = invited_by
            membership.invited_at = invited_at
            membership.accepted_at = now
        session.add(membership)
        session.flush()
        return membership

    def set_status(self, session: Session, membership_id: uuid.UUID, status: MembershipStatus) -> TeamMembership | None:
        membership = self.get(session, membership_id)
        if membership is None:
            return None
        membership.status = status.value
        session.add(membership)
        session.flush()
        return membership

    def set_role(self, session: Session, membership_id: uuid.UUID, role: Role) -> TeamMembership | None:
        membership = self.get(session, membership_id)
        if membership is None:
            return None
        membership.role = role.value
        session.add(membership)
        session.flush()
        return membership

    def count_active_owners(self, session: Session, enterprise_id: uuid.UUID) -> int:
        count = session.scalar(
            select(func.count())
            .select_from(TeamMembership)
            .where(
                TeamMembership.enterprise_id == enterprise_id,
                TeamMembership.role == Role.OWNER.value,
                TeamMembership.status == MembershipStatus.ACTIVE.value,
            )
        )
        return int(count or 0)


membership_directory = MembershipDirectory()
