from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Literal, NoReturn

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core import events
from app.core.config import get_settings
from app.metrics import observe_claim
from app.platform.accounts.models import UserAccount
from app.platform.accounts.plans import max_claims_for, plan_terms
from app.platform.accounts.service import AccountService, account_service, normalize_email
from app.platform.security.context import AuthContext
from app.platform.security.errors import (
    AlreadyClaimed,
    AlreadyProcessed,
    EmailMismatch,
    Expired,
    LimitReached,
    NotFound,
    Unauthenticated,
    UpgradeRequired,
    VerificationRequired,
)
from app.platform.security.roles import PlatformRole, Role
from app.services.audit import write_audit_log
from app.teams.directory import MembershipDirectory, membership_directory
from app.teams.invitations import generate_token
from app.teams.models import (
    ClaimStatus,
    Enterprise,
    EnterpriseClaim,
    ProfileClaim,
    TeamMembership,
    as_utc,
    utcnow,
)


logger = logging.getLogger("app.teams")

ClaimPath = Literal["token", "direct"]


def _raise_quota_exceeded(claimed_profiles: int, max_claims: int, paid_plan: bool) -> NoReturn:
    observe_claim("direct", "quota_exceeded")
    details = {
        "claimed_profiles": claimed_profiles,
        "max_claims": max_claims,
        "requires_upgrade": not paid_plan,
    }
    if not paid_plan:
        raise UpgradeRequired(details=details)
    raise LimitReached(details=details)


def claim_url(token: str) -> str:
    return f"{get_settings().public_base_url.rstrip('/')}/claim-profile?token={token}"


@dataclass(slots=True)
class ClaimEligibility:
    is_claimed: bool
    email_matches: bool
    email_verified: bool
    claimed_profiles: int
    max_claims: int
    paid_plan: bool

    @property
    def requires_verification(self) -> bool:
        return not self.email_matches or not self.email_verified

    @property
    def within_quota(self) -> bool:
        return self.claimed_profiles < self.max_claims

    @property
    def can_claim(self) -> bool:
        return not self.is_claimed and not self.requires_verification and self.within_quota


@dataclass(slots=True)
class ClaimService:
    directory: MembershipDirectory = membership_directory
    accounts: AccountService = account_service

    def issue(
        self,
        session: Session,
        ctx: AuthContext,
        enterprise_id: uuid.UUID,
        invited_email: str,
        invited_name: str | None = None,
    ) -> ProfileClaim:
        enterprise = self.directory.get_enterprise(session, enterprise_id)
        if enterprise is None:
            raise NotFound("Enterprise not found")
        if self.directory.count_active_owners(session, enterprise_id) > 0:
            raise AlreadyClaimed()

        settings = get_settings()
        normalized = normalize_email(invited_email)
        claim = ProfileClaim(
            enterprise_id=enterprise_id,
            claim_token=generate_token(),
            invited_email=normalized,
            invited_name=invited_name,
            invited_by=ctx.user_id,
            status=ClaimStatus.PENDING.value,
            expires_at=utcnow() + timedelta(days=settings.claim_ttl_days),
        )
        session.add(claim)
        session.flush()
        write_audit_log(
            session,
            ctx.actor_id,
            "enterprise.claim.issued",
            "team.profile_claim",
            claim.id,
            enterprise_id=enterprise_id,
            metadata={"invited_email": normalized},
        )
        session.commit()
        session.refresh(claim)
        observe_claim("token", "issued")

        events.publish(
            {
                "event_type": "enterprise.claim.issued",
                "claim_id": str(claim.id),
                "enterprise_id": str(enterprise_id),
                "enterprise_name": enterprise.name,
                "recipient": normalized,
                "recipient_name": invited_name,
                "link": claim_url(claim.claim_token),
            }
        )
        return claim

    def lookup(self, session: Session, token: str, *, now: datetime | None = None) -> ProfileClaim:
        claim = session.scalar(select(ProfileClaim).where(ProfileClaim.claim_token == token))
        if claim is None:
            raise NotFound("Claim not found")
        if claim.status == ClaimStatus.PENDING and (now or utcnow()) > as_utc(claim.expires_at):
            claim.status = ClaimStatus.EXPIRED.value
            session.add(claim)
            session.commit()
            session.refresh(claim)
        return claim

    def eligibility(self, session: Session, ctx: AuthContext, enterprise: Enterprise) -> ClaimEligibility:
        account = self._require_account(session, ctx.user_id)
        contact_email = normalize_email(enterprise.contact_email) if enterprise.contact_email else None
        require_verified = get_settings().claim_direct_require_verified_email
        return ClaimEligibility(
            is_claimed=self.directory.count_active_owners(session, enterprise.id) > 0,
            email_matches=contact_email is not None and contact_email == normalize_email(account.email),
            email_verified=account.email_verified or not require_verified,
            claimed_profiles=account.claimed_profiles_count,
            max_claims=max_claims_for(account.plan_type, account.max_claimed_profiles),
            paid_plan=plan_terms(account.plan_type).paid,
        )

    def claim_status(self, session: Session, ctx: AuthContext, enterprise_id: uuid.UUID) -> tuple[Enterprise, ClaimEligibility]:
        enterprise = self.directory.get_enterprise(session, enterprise_id)
        if enterprise is None:
            raise NotFound("Enterprise not found")
        return enterprise, self.eligibility(session, ctx, enterprise)

    def claim_with_token(
        self,
        session: Session,
        ctx: AuthContext,
        token: str,
        *,
        now: datetime | None = None,
    ) -> TeamMembership:
        current_time = now or utcnow()
        claim = session.scalar(select(ProfileClaim).where(ProfileClaim.claim_token == token).with_for_update())
        if claim is None:
            raise NotFound("Claim not found")
        if claim.status != ClaimStatus.PENDING:
            raise AlreadyProcessed(details={"status": claim.status})
        if current_time > as_utc(claim.expires_at):
            claim.status = ClaimStatus.EXPIRED.value
            session.add(claim)
            session.commit()
            observe_claim("token", "expired")
            raise Expired("Claim has expired")
        if normalize_email(claim.invited_email) != ctx.email:
            raise EmailMismatch()

        claim.status = ClaimStatus.ACCEPTED.value
        claim.accepted_by = ctx.user_id
        claim.accepted_at = current_time
        session.add(claim)
        return self._grant_ownership(session, ctx, claim.enterprise_id, "token")

    def claim_direct(self, session: Session, ctx: AuthContext, enterprise_id: uuid.UUID) -> TeamMembership:
        enterprise = self.directory.get_enterprise(session, enterprise_id)
        if enterprise is None:
            raise NotFound("Enterprise not found")

        eligibility = self.eligibility(session, ctx, enterprise)
        if eligibility.is_claimed:
            observe_claim("direct", "already_claimed")
            raise AlreadyClaimed()
        if eligibility.requires_verification:
            observe_claim("direct", "verification_required")
            raise VerificationRequired(
                details={
                    "requires_verification": True,
                    "contact_email_on_file": enterprise.contact_email is not None,
                }
            )
        if not eligibility.within_quota:
            _raise_quota_exceeded(eligibility.claimed_profiles, eligibility.max_claims, eligibility.paid_plan)

        return self._grant_ownership(session, ctx, enterprise_id, "direct")

    def _grant_ownership(
        self,
        session: Session,
        ctx: AuthContext,
        enterprise_id: uuid.UUID,
        claim_path: ClaimPath,
    ) -> TeamMembership:
        enterprise = self.directory.lock_enterprise(session, enterprise_id)
        if enterprise is None:
            session.rollback()
            raise NotFound("Enterprise not found")
        if self.directory.count_active_owners(session, enterprise_id) > 0:
            session.rollback()
            observe_claim(claim_path, "already_claimed")
            raise AlreadyClaimed()

        account = self._require_account(session, ctx.user_id, for_update=True)
        if claim_path == "direct":
            # Re-checked under the account lock; concurrent claims on other enterprises share this row.
            max_claims = max_claims_for(account.plan_type, account.max_claimed_profiles)
            if account.claimed_profiles_count >= max_claims:
                claimed, paid = account.claimed_profiles_count, plan_terms(account.plan_type).paid
                session.rollback()
                _raise_quota_exceeded(claimed, max_claims, paid)

        try:
            session.add(EnterpriseClaim(enterprise_id=enterprise_id, user_id=ctx.user_id, claim_path=claim_path))
            session.flush()
            membership = self.directory.upsert(
                session,
                enterprise_id=enterprise_id,
                user_id=ctx.user_id,
                role=Role.OWNER,
            )
            account.claimed_profiles_count = UserAccount.claimed_profiles_count + 1
            self.accounts.promote_platform_role(account, PlatformRole.ENTERPRISE_OWNER)
            session.add(account)
            write_audit_log(
                session,
                ctx.actor_id,
                "enterprise.claimed",
                "team.membership",
                membership.id,
                enterprise_id=enterprise_id,
                metadata={"claim_path": claim_path},
            )
            session.commit()
        except IntegrityError:
            session.rollback()
            observe_claim(claim_path, "already_claimed")
            raise AlreadyClaimed()

        session.refresh(membership)
        observe_claim(claim_path, "claimed")
        logger.info(
            "enterprise.claimed",
            extra={"enterprise_id": str(enterprise_id), "user_id": ctx.actor_id, "reason": claim_path},
        )
        events.publish(
            {
                "event_type": "enterprise.claimed",
                "enterprise_id": str(enterprise_id),
                "user_id": ctx.actor_id,
                "membership_id": str(membership.id),
                "claim_path": claim_path,
            }
        )
        return membership

    def _require_account(self, session: Session, user_id: uuid.UUID, *, for_update: bool = False) -> UserAccount:
        account = self.accounts.get_account(session, user_id, for_update=for_update)
        if account is None:
            raise Unauthenticated()
        return account


claim_service = ClaimService()
