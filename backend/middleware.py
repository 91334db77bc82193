from fastapi import Request, HTTPException, status
from typing import Optional
import logging
from auth import decode_access_token
from models import Identity, UserRole
from services.portal_session import portal_sessions

logger = logging.getLogger(__name__)

async def get_current_user(request: Request) -> Optional[dict]:
    """Extract and validate current user from JWT token."""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None

    token = auth_header.split(" ")[1]
    payload = decode_access_token(token)

    if not payload or not payload.get("sub") or not payload.get("sid"):
        return None

    if await portal_sessions.is_revoked(payload["sid"]):
        logger.info(f"Revoked session used by {payload['sub']}")
        return None

    return payload

def identity_from_token(user: dict) -> Identity:
    """Identity carried by a decoded token payload."""
    return Identity(email=user["sub"], role=user.get("role", UserRole.ROLE_CLIENT.value))

async def require_auth(request: Request) -> dict:
    """Require valid authentication."""
    user = await get_current_user(request)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated"
        )
    return user

async def require_role(request: Request, required_role: UserRole) -> dict:
    """Require specific role."""
    user = await require_auth(request)
    user_role = user.get("role")

    role_hierarchy = {
        UserRole.ROLE_ADMIN.value: 2,
        UserRole.ROLE_CLIENT.value: 1
    }

    if role_hierarchy.get(user_role, 0) < role_hierarchy.get(required_role.value, 0):
        logger.info(f"Route guard: {user.get('sub')} denied {request.url.path}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions"
        )

    return user

async def require_admin(request: Request) -> dict:
    """Require admin role."""
    return await require_role(request, UserRole.ROLE_ADMIN)

async def client_route_guard(request: Request) -> dict:
    """Guard for portal routes - any signed-in identity may open its own record."""
    return await require_role(request, UserRole.ROLE_CLIENT)

async def admin_route_guard(request: Request) -> dict:
    """Guard for admin routes."""
    user = await require_admin(request)
    return user
