from fastapi import APIRouter, Depends, HTTPException, Request, status
from models import LoginRequest, FederatedLoginRequest, TokenResponse, Identity, UserRole, AuditAction
from auth import create_access_token
from middleware import require_auth, identity_from_token
from services.identity_service import identity_resolver, normalize_identifier
from services.portal_errors import AuthError, ProviderUnavailable
from services.portal_session import portal_sessions
from utils.audit import create_audit_log
from typing import Optional
from datetime import datetime, timezone
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/auth", tags=["auth"])


def _token_response(identity: Identity) -> TokenResponse:
    access_token = create_access_token({
        "sub": identity.email,
        "role": identity.role.value,
    })
    return TokenResponse(
        access_token=access_token,
        user={"email": identity.email, "role": identity.role.value},
    )


async def _audit_login_failure(email: Optional[str], error: AuthError, method: str):
    await create_audit_log(
        action=AuditAction.USER_LOGIN_FAILED,
        actor_id=email,
        metadata={"method": method, "reason": error.error_code},
    )


@router.post("/login", response_model=TokenResponse)
async def login(credentials: LoginRequest):
    """Portal login with a username (or full email) and password."""
    try:
        identity = await identity_resolver.resolve(credentials.identifier, credentials.password)
    except ProviderUnavailable:
        raise
    except AuthError as e:
        await _audit_login_failure(normalize_identifier(credentials.identifier), e, "password")
        raise

    await create_audit_log(
        action=AuditAction.USER_LOGIN_SUCCESS,
        actor_role=identity.role,
        actor_id=identity.email,
        client_id=identity.email if identity.role == UserRole.ROLE_CLIENT else None,
        metadata={"method": "password"},
    )
    logger.info(f"Login succeeded for {identity.email}")
    return _token_response(identity)


@router.post("/federated", response_model=TokenResponse)
async def federated_login(data: FederatedLoginRequest):
    """Login with a signed assertion from the federated identity provider."""
    try:
        identity = await identity_resolver.resolve_federated(data.assertion)
    except ProviderUnavailable:
        raise
    except AuthError as e:
        await _audit_login_failure(None, e, "federated")
        raise

    await create_audit_log(
        action=AuditAction.USER_LOGIN_SUCCESS,
        actor_role=identity.role,
        actor_id=identity.email,
        client_id=identity.email if identity.role == UserRole.ROLE_CLIENT else None,
        metadata={"method": "federated"},
    )
    logger.info(f"Federated login succeeded for {identity.email}")
    return _token_response(identity)


@router.post("/logout")
async def logout(user: dict = Depends(require_auth)):
    """Sign out: clears the portal session and any open signature capture, and revokes the token."""
    expires_at = datetime.fromtimestamp(user["exp"], timezone.utc) if user.get("exp") else None
    await portal_sessions.sign_out(user["sid"], expires_at)
    identity = identity_from_token(user)
    await create_audit_log(
        action=AuditAction.USER_LOGOUT,
        actor_role=identity.role,
        actor_id=identity.email,
    )
    return {"message": "Signed out"}


@router.get("/me")
async def get_me(request: Request):
    """Identity behind the current token."""
    user = await require_auth(request)
    try:
        identity = identity_from_token(user)
    except (KeyError, ValueError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated"
        )
    return {
        "email": identity.email,
        "role": identity.role.value,
        "is_admin": identity.is_admin,
    }
