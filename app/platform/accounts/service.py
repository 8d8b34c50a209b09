from __future__ import annotations

import uuid

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.auth import AuthUser
from app.platform.accounts.models import UserAccount
from app.platform.security.context import AuthContext
from app.platform.security.errors import Unauthenticated
from app.platform.security.roles import PlatformRole, platform_rank


def normalize_email(email: str) -> str:
    return email.strip().lower()


class AccountService:
    def get_account(self, session: Session, user_id: uuid.UUID, *, for_update: bool = False) -> UserAccount | None:
        stmt = select(UserAccount).where(UserAccount.id == user_id)
        if for_update:
            # Locked reads must see committed values, not the identity map copy.
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return session.scalar(stmt)

    def resolve_context(self, session: Session, auth_user: AuthUser, *, correlation_id: str | None = None) -> AuthContext:
        if auth_user.is_anonymous:
            raise Unauthenticated()
        try:
            user_id = uuid.UUID(auth_user.sub)
        except ValueError:
            raise Unauthenticated()

        account = self.get_account(session, user_id)
        if account is None:
            raise Unauthenticated()

        return AuthContext(
            user_id=account.id,
            email=normalize_email(account.email),
            platform_role=PlatformRole(account.platform_role),
            email_verified=account.email_verified,
            correlation_id=correlation_id,
        )

    def promote_platform_role(self, account: UserAccount, target: PlatformRole) -> bool:
        if platform_rank(account.platform_role) >= platform_rank(target):
            return False
        account.platform_role = target.value
        return True


account_service = AccountService()
