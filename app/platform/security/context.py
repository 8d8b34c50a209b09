from __future__ import annotations

import uuid
from dataclasses import dataclass

from app.platform.security.roles import PlatformRole


@dataclass(slots=True)
class AuthContext:
    """Resolved caller identity, passed explicitly into every service call."""

    user_id: uuid.UUID
    email: str
    platform_role: PlatformRole = PlatformRole.MEMBER
    email_verified: bool = False
    correlation_id: str | None = None

    @property
    def is_platform_admin(self) -> bool:
        return self.platform_role is PlatformRole.ADMIN

    @property
    def actor_id(self) -> str:
        return str(self.user_id)
