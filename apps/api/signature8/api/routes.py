from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from signature8.core.auth import AuthUser, get_current_user
from signature8.core.config import get_settings
from signature8.core.rbac import permissions_for_role
from signature8.metrics import generate_metrics_payload, metrics_content_type
from signature8.crm.api import (
    clients_router,
    contacts_router,
    leads_router,
    notifications_router,
    opportunities_router,
    users_router,
)

router = APIRouter()
router.include_router(leads_router)
router.include_router(contacts_router)
router.include_router(opportunities_router)
router.include_router(clients_router)
router.include_router(notifications_router)
router.include_router(users_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/me", tags=["auth"])
async def me(user: AuthUser = Depends(get_current_user)) -> dict[str, str | list[str] | None]:
    return {
        "userId": user.user_id,
        "email": user.email,
        "role": user.role,
        "name": user.name,
        "permissions": sorted(permissions_for_role(user.role)),
    }


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if "system.metrics.read" not in permissions_for_role(user.role):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Missing permission: system.metrics.read")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
