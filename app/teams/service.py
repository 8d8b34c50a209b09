from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from sqlalchemy.orm import Session

from app.core import events
from app.platform.accounts.service import normalize_email
from app.platform.security.context import AuthContext
from app.platform.security.errors import CrossTenant, Forbidden, LastOwnerViolation, NotFound
from app.platform.security.roles import Role, can_change_role, rank
from app.services.audit import write_audit_log
from app.teams.directory import MembershipDirectory, membership_directory
from app.teams.models import Enterprise, MembershipStatus, TeamMembership
from app.teams.schemas import TeamMemberRead, UserMembershipRead


logger = logging.getLogger("app.teams")


@dataclass(slots=True)
class TeamService:
    directory: MembershipDirectory = membership_directory

    def create_enterprise(
        self,
        session: Session,
        ctx: AuthContext,
        *,
        name: str,
        contact_email: str | None = None,
    ) -> tuple[Enterprise, TeamMembership]:
        enterprise = Enterprise(
            name=name,
            contact_email=normalize_email(contact_email) if contact_email else None,
            created_by=ctx.user_id,
        )
        session.add(enterprise)
        session.flush()
        membership = self.directory.upsert(session, enterprise_id=enterprise.id, user_id=ctx.user_id, role=Role.OWNER)
        write_audit_log(
            session,
            ctx.actor_id,
            "enterprise.created",
            "teams.enterprise",
            enterprise.id,
            enterprise_id=enterprise.id,
            metadata={"name": name},
        )
        session.commit()
        session.refresh(enterprise)
        session.refresh(membership)
        events.publish({"event_type": "enterprise.created", "enterprise_id": str(enterprise.id), "user_id": ctx.actor_id})
        return enterprise, membership

    def list_team(self, session: Session, enterprise_id: uuid.UUID) -> list[TeamMemberRead]:
        members = self.directory.list_active(session, enterprise_id)
        members.sort(key=lambda item: (-rank(item.role), (item.user.display_name or item.user.email).lower()))
        return [
            TeamMemberRead.model_validate(
                {
                    **_membership_fields(item),
                    "email": item.user.email,
                    "display_name": item.user.display_name,
                }
            )
            for item in members
        ]

    def list_memberships(self, session: Session, ctx: AuthContext) -> list[UserMembershipRead]:
        rows = self.directory.list_for_user(session, ctx.user_id)
        return [
            UserMembershipRead.model_validate({**_membership_fields(item), "enterprise_name": item.enterprise.name})
            for item in rows
        ]

    def change_role(
        self,
        session: Session,
        ctx: AuthContext,
        *,
        enterprise_id: uuid.UUID,
        acting_role: Role,
        membership_id: uuid.UUID,
        new_role: Role,
    ) -> TeamMembership:
        self.directory.lock_enterprise(session, enterprise_id)
        membership = self._load_target(session, enterprise_id, membership_id)
        current_role = Role(membership.role)

        if not can_change_role(acting_role, new_role, current_role):
            session.rollback()
            raise Forbidden(
                "Insufficient permissions to assign this role",
                details={"current_role": acting_role.value, "required_role": _required_for(new_role, current_role).value},
            )

        if current_role is Role.OWNER and new_role is not Role.OWNER:
            self._ensure_other_owner(session, enterprise_id)

        self.directory.set_role(session, membership.id, new_role)
        write_audit_log(
            session,
            ctx.actor_id,
            "team.member.role_changed",
            "team.membership",
            membership.id,
            enterprise_id=enterprise_id,
            metadata={"from": current_role.value, "to": new_role.value},
        )
        session.commit()
        session.refresh(membership)
        logger.info(
            "member.role_changed",
            extra={"enterprise_id": str(enterprise_id), "membership_id": str(membership.id), "role": new_role.value},
        )
        events.publish(
            {
                "event_type": "team.member.role_changed",
                "enterprise_id": str(enterprise_id),
                "membership_id": str(membership.id),
                "from_role": current_role.value,
                "to_role": new_role.value,
            }
        )
        return membership

    def remove_member(
        self,
        session: Session,
        ctx: AuthContext,
        *,
        enterprise_id: uuid.UUID,
        acting_role: Role,
        membership_id: uuid.UUID,
    ) -> TeamMembership:
        self.directory.lock_enterprise(session, enterprise_id)
        membership = self._load_target(session, enterprise_id, membership_id)
        current_role = Role(membership.role)

        if rank(acting_role) < rank(current_role) or (current_role is Role.OWNER and acting_role is not Role.OWNER):
            session.rollback()
            raise Forbidden(
                "Insufficient permissions to remove this member",
                details={"current_role": acting_role.value, "required_role": current_role.value},
            )

        if current_role is Role.OWNER:
            self._ensure_other_owner(session, enterprise_id)

        self.directory.set_status(session, membership.id, MembershipStatus.INACTIVE)
        write_audit_log(
            session,
            ctx.actor_id,
            "team.member.removed",
            "team.membership",
            membership.id,
            enterprise_id=enterprise_id,
            metadata={"role": current_role.value, "user_id": str(membership.user_id)},
        )
        session.commit()
        session.refresh(membership)
        logger.info(
            "member.removed",
            extra={"enterprise_id": str(enterprise_id), "membership_id": str(membership.id)},
        )
        events.publish(
            {
                "event_type": "team.member.removed",
                "enterprise_id": str(enterprise_id),
                "membership_id": str(membership.id),
                "user_id": str(membership.user_id),
            }
        )
        return membership

    def _load_target(self, session: Session, enterprise_id: uuid.UUID, membership_id: uuid.UUID) -> TeamMembership:
        membership = self.directory.get(session, membership_id)
        if membership is None or membership.status != MembershipStatus.ACTIVE:
            session.rollback()
            raise NotFound("Team member not found")
        if membership.enterprise_id != enterprise_id:
            session.rollback()
            raise CrossTenant()
        return membership

    def _ensure_other_owner(self, session: Session, enterprise_id: uuid.UUID) -> None:
        if self.directory.count_active_owners(session, enterprise_id) < 2:
            session.rollback()
            raise LastOwnerViolation()


def _required_for(new_role: Role, current_role: Role) -> Role:
    if Role.OWNER in (new_role, current_role):
        return Role.OWNER
    return new_role if rank(new_role) >= rank(current_role) else current_role


def _membership_fields(item: TeamMembership) -> dict[str, object]:
    return {
        "id": item.id,
        "enterprise_id": item.enterprise_id,
        "user_id": item.user_id,
        "role": item.role,
        "status": item.status,
        "invited_by": item.invited_by,
        "invited_at": item.invited_at,
        "accepted_at": item.accepted_at,
    }


team_service = TeamService()
