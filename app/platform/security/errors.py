from __future__ import annotations

from typing import Any

from fastapi import status


class ControlPlaneError(Exception):
    """Base error for access and billing failures, rendered as the API error envelope."""

    status_code: int = status.HTTP_400_BAD_REQUEST
    code: str = "control_plane_error"
    default_message: str = "Request failed"

    def __init__(self, message: str | None = None, *, details: dict[str, Any] | None = None) -> None:
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)


class Unauthenticated(ControlPlaneError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "unauthenticated"
    default_message = "Authentication required"


class BadRequest(ControlPlaneError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "bad_request"
    default_message = "Bad request"


class NotFound(ControlPlaneError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"
    default_message = "Not found"


class Forbidden(ControlPlaneError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "forbidden"
    default_message = "Insufficient permissions"


class CrossTenant(Forbidden):
    code = "cross_tenant"
    default_message = "Resource belongs to another enterprise"


class AlreadyProcessed(ControlPlaneError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "already_processed"
    default_message = "Token has already been processed"


class Expired(ControlPlaneError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "expired"
    default_message = "Token has expired"


class EmailMismatch(ControlPlaneError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "email_mismatch"
    default_message = "Token was issued to a different email address"


class AlreadyClaimed(ControlPlaneError):
    status_code = status.HTTP_409_CONFLICT
    code = "already_claimed"
    default_message = "Enterprise has already been claimed"


class VerificationRequired(ControlPlaneError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "verification_required"
    default_message = "Email verification required to claim this enterprise"


class LimitReached(ControlPlaneError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "claim_limit_reached"
    default_message = "Claimed profile limit reached"


class UpgradeRequired(LimitReached):
    code = "upgrade_required"
    default_message = "Upgrade your plan to claim additional profiles"


class DuplicateInvitation(ControlPlaneError):
    status_code = status.HTTP_409_CONFLICT
    code = "duplicate_invitation"
    default_message = "A pending invitation already exists for this email"


class AlreadyMember(ControlPlaneError):
    status_code = status.HTTP_409_CONFLICT
    code = "already_member"
    default_message = "User is already a member of this enterprise"


class LastOwnerViolation(ControlPlaneError):
    status_code = status.HTTP_409_CONFLICT
    code = "last_owner_violation"
    default_message = "Enterprise must retain at least one active owner"


class InsufficientCredits(ControlPlaneError):
    status_code = status.HTTP_402_PAYMENT_REQUIRED
    code = "INSUFFICIENT_CREDITS"
    default_message = "Insufficient credits"


class AIRequestFailed(ControlPlaneError):
    status_code = status.HTTP_502_BAD_GATEWAY
    code = "ai_request_failed"
    default_message = "AI request failed"


class ServiceUnavailable(ControlPlaneError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "service_unavailable"
    default_message = "Service not configured"
