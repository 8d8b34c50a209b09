from fastapi import APIRouter, Depends
from fastapi.responses import Response

from app.billing.api import ai_router, router as billing_router
from app.core.auth import AuthUser, get_current_user
from app.core.config import get_settings
from app.metrics import generate_metrics_payload, metrics_content_type
from app.platform.security.errors import Forbidden, NotFound
from app.teams.api import claims_router, invitations_router, me_router, router as enterprises_router

router = APIRouter()
router.include_router(enterprises_router)
router.include_router(invitations_router)
router.include_router(claims_router)
router.include_router(me_router)
router.include_router(ai_router)
router.include_router(billing_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/me", tags=["auth"])
async def me(user: AuthUser = Depends(get_current_user)) -> dict[str, str | list[str]]:
    return {
        "sub": user.sub,
        "roles": user.roles,
    }


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise NotFound("not found")
    if "system.metrics.read" not in user.roles:
        raise Forbidden("Missing permission: system.metrics.read")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
