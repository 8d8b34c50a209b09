from app.teams.claims import ClaimEligibility, ClaimService, claim_service
from app.teams.directory import MembershipDirectory, membership_directory
from app.teams.invitations import InvitationService, invitation_service
from app.teams.models import (
    ClaimStatus,
    Enterprise,
    EnterpriseClaim,
    EnterpriseInvitation,
    InvitationStatus,
    MembershipStatus,
    ProfileClaim,
    TeamMembership,
)
from app.teams.service import TeamService, team_service

__all__ = [
    "ClaimEligibility",
    "ClaimService",
    "claim_service",
    "MembershipDirectory",
    "membership_directory",
    "InvitationService",
    "invitation_service",
    "ClaimStatus",
    "Enterprise",
    "EnterpriseClaim",
    "EnterpriseInvitation",
    "InvitationStatus",
    "MembershipStatus",
    "ProfileClaim",
    "TeamMembership",
    "TeamService",
    "team_service",
]
