from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from app.core.auth import AuthUser, get_current_user
from app.core.context import request_context, request_correlation_id
from app.core.database import get_db
from app.metrics import observe_access_denied, observe_admin_override
from app.platform.accounts.service import account_service
from app.platform.security.context import AuthContext
from app.platform.security.errors import BadRequest, Forbidden, NotFound, Unauthenticated
from app.platform.security.roles import Role, satisfies


logger = logging.getLogger("app.access")

ENTERPRISE_ID_FIELD = "enterprise_id"


@dataclass(slots=True)
class EnterpriseAccess:
    enterprise: Enterprise
    role: Role
    ctx: AuthContext
    via_platform_admin: bool = False

    @property
    def enterprise_id(self) -> uuid.UUID:
        return self.enterprise.id


def get_auth_context(
    request: Request,
    auth_user: AuthUser = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> AuthContext:
    try:
        ctx = account_service.resolve_context(db, auth_user, correlation_id=request_correlation_id(request))
    except Unauthenticated:
        observe_access_denied("unauthenticated")
        raise
    context = request_context(request)
    if context is not None:
        context.user_id = ctx.actor_id
    return ctx


async def resolve_enterprise_id(request: Request) -> str | None:
    raw = request.path_params.get(ENTERPRISE_ID_FIELD)
    if raw:
        return str(raw)
    if request.method.upper() in {"GET", "HEAD", "DELETE"}:
        return None
    body = await request.body()
    if not body:
        return None
    try:
        payload = json.loads(body)
    except ValueError:
        return None
    if isinstance(payload, dict) and payload.get(ENTERPRISE_ID_FIELD):
        return str(payload[ENTERPRISE_ID_FIELD])
    return None


def require_enterprise_role(minimum: Role) -> Callable[..., EnterpriseAccess]:
    def checker(
        request: Request,
        ctx: AuthContext = Depends(get_auth_context),
        raw_enterprise_id: str | None = Depends(resolve_enterprise_id),
        db: Session = Depends(get_db),
    ) -> EnterpriseAccess:
        if raw_enterprise_id is None:
            observe_access_denied("missing_enterprise")
            raise BadRequest("Enterprise ID required")
        try:
            enterprise_id = uuid.UUID(raw_enterprise_id)
        except ValueError:
            observe_access_denied("missing_enterprise")
            raise BadRequest("Enterprise ID must be a UUID")

        enterprise = membership_directory.get_enterprise(db, enterprise_id)

        if ctx.is_platform_admin:
            if enterprise is None:
                observe_access_denied("not_found")
                raise NotFound("Enterprise not found")
            observe_admin_override()
            logger.info(
                "access.platform_admin_override",
                extra={"user_id": ctx.actor_id, "enterprise_id": str(enterprise_id), "required_role": minimum.value},
            )
            access = EnterpriseAccess(enterprise=enterprise, role=Role.OWNER, ctx=ctx, via_platform_admin=True)
            _attach(request, access)
            return access

        role = membership_directory.role_of(db, ctx.user_id, enterprise_id) if enterprise is not None else None
        if enterprise is None or role is None:
            observe_access_denied("not_member")
            raise NotFound()

        if not satisfies(role, minimum):
            observe_access_denied("insufficient_role")
            raise Forbidden(details={"current_role": role.value, "required_role": minimum.value})

        access = EnterpriseAccess(enterprise=enterprise, role=role, ctx=ctx)
        _attach(request, access)
        return access

    return checker


def _attach(request: Request, access: EnterpriseAccess) -> None:
    request.state.enterprise_access = access
    context = request_context(request)
    if context is not None:
        context.enterprise_id = str(access.enterprise_id)


# Imported last: app.teams -> ... -> app.billing.api imports get_auth_context from this module.
from app.teams.directory import membership_directory
from app.teams.models import Enterprise
