from __future__ import annotations

import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import and_, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core import events
from app.core.config import get_settings
from app.metrics import observe_invitation_transition
from app.platform.accounts.models import UserAccount
from app.platform.accounts.service import normalize_email
from app.platform.security.context import AuthContext
from app.platform.security.errors import (
    AlreadyMember,
    AlreadyProcessed,
    BadRequest,
    CrossTenant,
    DuplicateInvitation,
    EmailMismatch,
    Expired,
    NotFound,
)
from app.platform.security.roles import INVITABLE_ROLES, Role
from app.services.audit import write_audit_log
from app.teams.directory import MembershipDirectory, membership_directory
from app.teams.models import (
    EnterpriseInvitation,
    InvitationStatus,
    MembershipStatus,
    TeamMembership,
    as_utc,
    utcnow,
)


logger = logging.getLogger("app.teams")

TOKEN_BYTES = 32


def generate_token() -> str:
    """Opaque single-use token; 32 random bytes encode to 43 URL-safe characters."""
    return secrets.token_urlsafe(TOKEN_BYTES)


def invitation_accept_url(token: str) -> str:
    return f"{get_settings().public_base_url.rstrip('/')}/team/invitations/accept/{token}"


@dataclass(slots=True)
class InvitationService:
    directory: MembershipDirectory = membership_directory

    def create(
        self,
        session: Session,
        ctx: AuthContext,
        enterprise_id: uuid.UUID,
        email: str,
        role: Role,
    ) -> EnterpriseInvitation:
        if role not in INVITABLE_ROLES:
            raise BadRequest("Owner role cannot be granted by invitation")

        normalized = normalize_email(email)
        pending = self._pending_for(session, enterprise_id, normalized)
        if pending is not None:
            if utcnow() <= as_utc(pending.expires_at):
                raise DuplicateInvitation(details={"email": normalized})
            # A lapsed invitation no longer holds the pending slot.
            pending.status = InvitationStatus.EXPIRED.value
            session.add(pending)
            session.flush()
            observe_invitation_transition("expired")

        existing_member = session.scalar(
            select(TeamMembership)
            .join(UserAccount, UserAccount.id == TeamMembership.user_id)
            .where(
                TeamMembership.enterprise_id == enterprise_id,
                TeamMembership.status == MembershipStatus.ACTIVE.value,
                func.lower(UserAccount.email) == normalized,
            )
        )
        if existing_member is not None:
            raise AlreadyMember(details={"email": normalized, "membership_id": str(existing_member.id)})

        settings = get_settings()
        invitation = EnterpriseInvitation(
            enterprise_id=enterprise_id,
            email=normalized,
            role=role.value,
            inviter_id=ctx.user_id,
            token=generate_token(),
            status=InvitationStatus.PENDING.value,
            expires_at=utcnow() + timedelta(days=settings.invitation_ttl_days),
        )
        session.add(invitation)
        try:
            session.flush()
        except IntegrityError:
            session.rollback()
            raise DuplicateInvitation(details={"email": normalized})

        write_audit_log(
            session,
            ctx.actor_id,
            "team.invitation.created",
            "team.invitation",
            invitation.id,
            enterprise_id=enterprise_id,
            metadata={"email": normalized, "role": role.value},
        )
        session.commit()
        session.refresh(invitation)
        observe_invitation_transition("created")
        logger.info(
            "invitation.created",
            extra={"enterprise_id": str(enterprise_id), "invitation_id": str(invitation.id), "role": role.value},
        )

        events.publish(
            {
                "event_type": "team.invitation.created",
                "invitation_id": str(invitation.id),
                "enterprise_id": str(enterprise_id),
                "enterprise_name": invitation.enterprise.name,
                "recipient": normalized,
                "role": role.value,
                "link": invitation_accept_url(invitation.token),
            }
        )
        return invitation

    def accept(
        self,
        session: Session,
        ctx: AuthContext,
        token: str,
        *,
        now: datetime | None = None,
    ) -> tuple[TeamMembership, bool]:
        current_time = now or utcnow()
        invitation = session.scalar(
            select(EnterpriseInvitation).where(EnterpriseInvitation.token == token).with_for_update()
        )
        if invitation is None:
            raise NotFound("Invitation not found")

        if invitation.status != InvitationStatus.PENDING:
            replay = self._replayed_acceptance(session, ctx, invitation)
            if replay is not None:
                return replay, False
            raise AlreadyProcessed(details={"status": invitation.status})

        if current_time > as_utc(invitation.expires_at):
            invitation.status = InvitationStatus.EXPIRED.value
            session.add(invitation)
            session.commit()
            observe_invitation_transition("expired")
            raise Expired("Invitation has expired")

        if normalize_email(invitation.email) != ctx.email:
            raise EmailMismatch()

        existing = self.directory.get_active(session, ctx.user_id, invitation.enterprise_id)
        if existing is not None:
            self._mark_accepted(invitation, ctx, current_time)
            session.add(invitation)
            session.commit()
            session.refresh(existing)
            observe_invitation_transition("accepted_existing")
            return existing, False

        enterprise_id = invitation.enterprise_id
        try:
            membership = self.directory.upsert(
                session,
                enterprise_id=enterprise_id,
                user_id=ctx.user_id,
                role=Role(invitation.role),
                invited_by=invitation.inviter_id,
                invited_at=invitation.created_at,
            )
            self._mark_accepted(invitation, ctx, current_time)
            session.add(invitation)
            write_audit_log(
                session,
                ctx.actor_id,
                "team.invitation.accepted",
                "team.membership",
                membership.id,
                enterprise_id=enterprise_id,
                metadata={"invitation_id": str(invitation.id), "role": invitation.role},
            )
            session.commit()
        except IntegrityError:
            session.rollback()
            concurrent = self.directory.get_active(session, ctx.user_id, enterprise_id)
            if concurrent is None:
                raise
            return concurrent, False

        session.refresh(membership)
        observe_invitation_transition("accepted")
        logger.info(
            "invitation.accepted",
            extra={
                "enterprise_id": str(invitation.enterprise_id),
                "invitation_id": str(invitation.id),
                "membership_id": str(membership.id),
            },
        )
        events.publish(
            {
                "event_type": "team.invitation.accepted",
                "invitation_id": str(invitation.id),
                "enterprise_id": str(invitation.enterprise_id),
                "membership_id": str(membership.id),
                "user_id": ctx.actor_id,
            }
        )
        return membership, True

    def cancel(
        self,
        session: Session,
        ctx: AuthContext,
        invitation_id: uuid.UUID,
        acting_enterprise_id: uuid.UUID,
    ) -> EnterpriseInvitation:
        invitation = session.get(EnterpriseInvitation, invitation_id)
        if invitation is None:
            raise NotFound("Invitation not found")
        if invitation.enterprise_id != acting_enterprise_id:
            raise CrossTenant()
        if invitation.status != InvitationStatus.PENDING:
            raise AlreadyProcessed(details={"status": invitation.status})

        invitation.status = InvitationStatus.CANCELLED.value
        session.add(invitation)
        write_audit_log(
            session,
            ctx.actor_id,
            "team.invitation.cancelled",
            "team.invitation",
            invitation.id,
            enterprise_id=invitation.enterprise_id,
        )
        session.commit()
        session.refresh(invitation)
        observe_invitation_transition("cancelled")
        return invitation

    def list_pending(self, session: Session, enterprise_id: uuid.UUID) -> list[EnterpriseInvitation]:
        stmt = (
            select(EnterpriseInvitation)
            .where(
                EnterpriseInvitation.enterprise_id == enterprise_id,
                EnterpriseInvitation.status == InvitationStatus.PENDING.value,
            )
            .order_by(EnterpriseInvitation.created_at.desc())
        )
        return list(session.scalars(stmt).all())

    def list_for_user(self, session: Session, ctx: AuthContext) -> list[EnterpriseInvitation]:
        now = utcnow()
        stmt = (
            select(EnterpriseInvitation)
            .where(
                and_(
                    EnterpriseInvitation.email == ctx.email,
                    EnterpriseInvitation.status == InvitationStatus.PENDING.value,
                )
            )
            .order_by(EnterpriseInvitation.created_at.desc())
        )
        return [item for item in session.scalars(stmt).all() if as_utc(item.expires_at) >= now]

    def _pending_for(self, session: Session, enterprise_id: uuid.UUID, email: str) -> EnterpriseInvitation | None:
        return session.scalar(
            select(EnterpriseInvitation).where(
                EnterpriseInvitation.enterprise_id == enterprise_id,
                EnterpriseInvitation.email == email,
                EnterpriseInvitation.status == InvitationStatus.PENDING.value,
            )
        )

    def _replayed_acceptance(
        self,
        session: Session,
        ctx: AuthContext,
        invitation: EnterpriseInvitation,
    ) -> TeamMembership | None:
        if invitation.status != InvitationStatus.ACCEPTED or invitation.accepted_by != ctx.user_id:
            return None
        return self.directory.get_active(session, ctx.user_id, invitation.enterprise_id)

    @staticmethod
    def _mark_accepted(invitation: EnterpriseInvitation, ctx: AuthContext, accepted_at: datetime) -> None:
        invitation.status = InvitationStatus.ACCEPTED.value
        invitation.accepted_by = ctx.user_id
        invitation.accepted_at = accepted_at


invitation_service = InvitationService()
