from app.platform.security.context import AuthContext
from app.platform.security.errors import (
    AIRequestFailed,
    AlreadyClaimed,
    AlreadyMember,
    AlreadyProcessed,
    BadRequest,
    ControlPlaneError,
    CrossTenant,
    DuplicateInvitation,
    EmailMismatch,
    Expired,
    Forbidden,
    InsufficientCredits,
    LastOwnerViolation,
    LimitReached,
    NotFound,
    ServiceUnavailable,
    Unauthenticated,
    UpgradeRequired,
    VerificationRequired,
)
from app.platform.security.roles import (
    INVITABLE_ROLES,
    PlatformRole,
    Role,
    can_change_role,
    can_edit,
    can_invite,
    can_manage_team,
    can_remove,
    can_view,
    rank,
    satisfies,
)

__all__ = [
    "AuthContext",
    "AIRequestFailed",
    "AlreadyClaimed",
    "AlreadyMember",
    "AlreadyProcessed",
    "BadRequest",
    "ControlPlaneError",
    "CrossTenant",
    "DuplicateInvitation",
    "EmailMismatch",
    "Expired",
    "Forbidden",
    "InsufficientCredits",
    "LastOwnerViolation",
    "LimitReached",
    "NotFound",
    "ServiceUnavailable",
    "Unauthenticated",
    "UpgradeRequired",
    "VerificationRequired",
    "INVITABLE_ROLES",
    "PlatformRole",
    "Role",
    "can_change_role",
    "can_edit",
    "can_invite",
    "can_manage_team",
    "can_remove",
    "can_view",
    "rank",
    "satisfies",
]
