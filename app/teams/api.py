from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.platform.security.context import AuthContext
from app.platform.security.gate import EnterpriseAccess, get_auth_context, require_enterprise_role
from app.platform.security.roles import Role
from app.teams.claims import claim_service, claim_url
from app.teams.invitations import invitation_accept_url, invitation_service
from app.teams.schemas import (
    ClaimResult,
    ClaimStatusRead,
    EnterpriseCreate,
    EnterpriseRead,
    InvitationAcceptResult,
    InvitationCreate,
    InvitationCreated,
    InvitationRead,
    MembershipRead,
    ProfileClaimCreate,
    ProfileClaimCreated,
    ProfileClaimLookup,
    ProfileClaimRead,
    RoleChangeRequest,
    TeamMemberRead,
    UserMembershipRead,
)
from app.teams.service import team_service


router = APIRouter(prefix="/api/enterprises", tags=["teams"])
invitations_router = APIRouter(prefix="/api/invitations", tags=["teams.invitations"])
claims_router = APIRouter(prefix="/api/claims", tags=["teams.claims"])
me_router = APIRouter(prefix="/api/me", tags=["teams.me"])


@router.post("", response_model=EnterpriseRead, status_code=status.HTTP_201_CREATED)
def create_enterprise(
    payload: EnterpriseCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> EnterpriseRead:
    enterprise, _ = team_service.create_enterprise(db, ctx, name=payload.name, contact_email=payload.contact_email)
    return EnterpriseRead.model_validate(enterprise)


@router.get("/{enterprise_id}/team", response_model=list[TeamMemberRead])
def list_team(
    enterprise_id: uuid.UUID,
    db: Session = Depends(get_db),
    access: EnterpriseAccess = Depends(require_enterprise_role(Role.VIEWER)),
) -> list[TeamMemberRead]:
    return team_service.list_team(db, access.enterprise_id)


@router.patch("/{enterprise_id}/team/{membership_id}", response_model=MembershipRead)
def change_member_role(
    enterprise_id: uuid.UUID,
    membership_id: uuid.UUID,
    payload: RoleChangeRequest,
    db: Session = Depends(get_db),
    access: EnterpriseAccess = Depends(require_enterprise_role(Role.ADMIN)),
) -> MembershipRead:
    membership = team_service.change_role(
        db,
        access.ctx,
        enterprise_id=access.enterprise_id,
        acting_role=access.role,
        membership_id=membership_id,
        new_role=Role(payload.role),
    )
    return MembershipRead.model_validate(membership)


@router.delete("/{enterprise_id}/team/{membership_id}", response_model=MembershipRead)
def remove_member(
    enterprise_id: uuid.UUID,
    membership_id: uuid.UUID,
    db: Session = Depends(get_db),
    access: EnterpriseAccess = Depends(require_enterprise_role(Role.ADMIN)),
) -> MembershipRead:
    membership = team_service.remove_member(
        db,
        access.ctx,
        enterprise_id=access.enterprise_id,
        acting_role=access.role,
        membership_id=membership_id,
    )
    return MembershipRead.model_validate(membership)


@router.post("/{enterprise_id}/invitations", response_model=InvitationCreated, status_code=status.HTTP_201_CREATED)
def create_invitation(
    enterprise_id: uuid.UUID,
    payload: InvitationCreate,
    db: Session = Depends(get_db),
    access: EnterpriseAccess = Depends(require_enterprise_role(Role.ADMIN)),
) -> InvitationCreated:
    invitation = invitation_service.create(db, access.ctx, access.enterprise_id, payload.email, Role(payload.role))
    return InvitationCreated.model_validate(
        {**InvitationRead.model_validate(invitation).model_dump(), "accept_url": invitation_accept_url(invitation.token)}
    )


@router.get("/{enterprise_id}/invitations", response_model=list[InvitationRead])
def list_pending_invitations(
    enterprise_id: uuid.UUID,
    db: Session = Depends(get_db),
    access: EnterpriseAccess = Depends(require_enterprise_role(Role.ADMIN)),
) -> list[InvitationRead]:
    return [InvitationRead.model_validate(item) for item in invitation_service.list_pending(db, access.enterprise_id)]


@router.delete("/{enterprise_id}/invitations/{invitation_id}", response_model=InvitationRead)
def cancel_invitation(
    enterprise_id: uuid.UUID,
    invitation_id: uuid.UUID,
    db: Session = Depends(get_db),
    access: EnterpriseAccess = Depends(require_enterprise_role(Role.ADMIN)),
) -> InvitationRead:
    invitation = invitation_service.cancel(db, access.ctx, invitation_id, access.enterprise_id)
    return InvitationRead.model_validate(invitation)


@router.get("/{enterprise_id}/claim-status", response_model=ClaimStatusRead)
def get_claim_status(
    enterprise_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> ClaimStatusRead:
    enterprise, eligibility = claim_service.claim_status(db, ctx, enterprise_id)
    return ClaimStatusRead(
        enterprise_id=enterprise.id,
        is_claimed=eligibility.is_claimed,
        can_claim=eligibility.can_claim,
        requires_verification=eligibility.requires_verification,
        requires_upgrade=not eligibility.within_quota and not eligibility.paid_plan,
        claimed_profiles=eligibility.claimed_profiles,
        max_claims=eligibility.max_claims,
    )


@router.post("/{enterprise_id}/claim", response_model=ClaimResult, status_code=status.HTTP_201_CREATED)
def claim_enterprise(
    enterprise_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> ClaimResult:
    membership = claim_service.claim_direct(db, ctx, enterprise_id)
    return ClaimResult(enterprise_id=enterprise_id, membership=MembershipRead.model_validate(membership), claim_path="direct")


@router.post("/{enterprise_id}/claims", response_model=ProfileClaimCreated, status_code=status.HTTP_201_CREATED)
def issue_profile_claim(
    enterprise_id: uuid.UUID,
    payload: ProfileClaimCreate,
    db: Session = Depends(get_db),
    access: EnterpriseAccess = Depends(require_enterprise_role(Role.ADMIN)),
) -> ProfileClaimCreated:
    claim = claim_service.issue(db, access.ctx, access.enterprise_id, payload.invited_email, payload.invited_name)
    return ProfileClaimCreated.model_validate(
        {**ProfileClaimRead.model_validate(claim).model_dump(), "claim_url": claim_url(claim.claim_token)}
    )


@invitations_router.post("/{token}/accept", response_model=InvitationAcceptResult)
def accept_invitation(
    token: str,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> InvitationAcceptResult:
    membership, created = invitation_service.accept(db, ctx, token)
    return InvitationAcceptResult(membership=MembershipRead.model_validate(membership), created=created)


@claims_router.get("/{token}", response_model=ProfileClaimLookup)
def lookup_claim(token: str, db: Session = Depends(get_db)) -> ProfileClaimLookup:
    claim = claim_service.lookup(db, token)
    return ProfileClaimLookup(
        enterprise_id=claim.enterprise_id,
        enterprise_name=claim.enterprise.name,
        invited_email=claim.invited_email,
        invited_name=claim.invited_name,
        status=claim.status,
        expires_at=claim.expires_at,
    )


@claims_router.post("/{token}/accept", response_model=ClaimResult)
def accept_claim(
    token: str,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> ClaimResult:
    membership = claim_service.claim_with_token(db, ctx, token)
    return ClaimResult(
        enterprise_id=membership.enterprise_id,
        membership=MembershipRead.model_validate(membership),
        claim_path="token",
    )


@me_router.get("/memberships", response_model=list[UserMembershipRead])
def my_memberships(
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> list[UserMembershipRead]:
    return team_service.list_memberships(db, ctx)


@me_router.get("/invitations", response_model=list[InvitationRead])
def my_invitations(
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> list[InvitationRead]:
    return [InvitationRead.model_validate(item) for item in invitation_service.list_for_user(db, ctx)]
