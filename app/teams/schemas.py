from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field


EnterpriseRole = Literal["viewer", "editor", "admin", "owner"]
InvitableRole = Literal["viewer", "editor", "admin"]
MembershipStatusValue = Literal["active", "inactive"]
InvitationStatusValue = Literal["pending", "accepted", "cancelled", "expired"]
ClaimStatusValue = Literal["pending", "accepted", "expired"]


class EnterpriseCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    contact_email: EmailStr | None = None


class EnterpriseRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    contact_email: str | None
    created_by: UUID | None
    created_at: datetime


class MembershipRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    enterprise_id: UUID
    user_id: UUID
    role: EnterpriseRole
    status: MembershipStatusValue
    invited_by: UUID | None
    invited_at: datetime | None
    accepted_at: datetime | None


class TeamMemberRead(MembershipRead):
    email: str
    display_name: str | None


class UserMembershipRead(MembershipRead):
    enterprise_name: str


class RoleChangeRequest(BaseModel):
    role: EnterpriseRole


class InvitationCreate(BaseModel):
    email: EmailStr
    role: InvitableRole = "viewer"


class InvitationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    enterprise_id: UUID
    email: str
    role: InvitableRole
    inviter_id: UUID
    status: InvitationStatusValue
    expires_at: datetime
    accepted_by: UUID | None
    accepted_at: datetime | None
    created_at: datetime


class InvitationCreated(InvitationRead):
    accept_url: str


class InvitationAcceptResult(BaseModel):
    membership: MembershipRead
    created: bool


class ProfileClaimCreate(BaseModel):
    invited_email: EmailStr
    invited_name: str | None = Field(default=None, max_length=255)


class ProfileClaimRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    enterprise_id: UUID
    invited_email: str
    invited_name: str | None
    status: ClaimStatusValue
    expires_at: datetime
    accepted_by: UUID | None
    accepted_at: datetime | None
    created_at: datetime


class ProfileClaimCreated(ProfileClaimRead):
    claim_url: str


class ProfileClaimLookup(BaseModel):
    enterprise_id: UUID
    enterprise_name: str
    invited_email: str
    invited_name: str | None
    status: ClaimStatusValue
    expires_at: datetime


class ClaimStatusRead(BaseModel):
    enterprise_id: UUID
    is_claimed: bool
    can_claim: bool
    requires_verification: bool
    requires_upgrade: bool
    claimed_profiles: int
    max_claims: int


class ClaimResult(BaseModel):
    enterprise_id: UUID
    membership: MembershipRead
    claim_path: Literal["token", "direct"]
