"""
Identity Resolver - maps portal credentials to a canonical client identity.

Credentials live in the `portal_users` collection (bcrypt hashes). Bare
usernames are portal accounts: they resolve to `<username>@<portal domain>`.
Federated sign-in accepts a provider-signed JWT assertion instead.

Each call is a single attempt; failures are surfaced, never retried here.
"""
import os
import logging
from datetime import datetime, timezone
from typing import Optional

from jose import JWTError, jwt
from pymongo.errors import PyMongoError

from auth import hash_password, verify_password
from database import database
from models import Identity, PortalUser, UserRole, UserStatus
from services.portal_errors import InvalidCredentials, ProviderUnavailable, ValidationError

logger = logging.getLogger(__name__)

PORTAL_USERNAME_DOMAIN = os.getenv("PORTAL_USERNAME_DOMAIN", "evans-portal.com")
FEDERATED_JWT_SECRET = os.getenv("FEDERATED_JWT_SECRET", "")
FEDERATED_JWT_ALGORITHMS = os.getenv("FEDERATED_JWT_ALGORITHMS", "HS256").split(",")
FEDERATED_AUDIENCE = os.getenv("FEDERATED_AUDIENCE") or None


def normalize_identifier(identifier: str) -> str:
    """Canonical identity for a login identifier.

    "smith" -> "smith@evans-portal.com"; "smith@other.com" is unchanged.
    """
    value = (identifier or "").strip()
    if not value:
        raise ValidationError("Username or email is required")
    if "@" not in value:
        value = f"{value}@{PORTAL_USERNAME_DOMAIN}"
    return value


def portal_username(client_id: str) -> str:
    """Inverse of normalize_identifier for display: strips the portal domain."""
    suffix = f"@{PORTAL_USERNAME_DOMAIN}"
    if client_id.endswith(suffix):
        return client_id[: -len(suffix)]
    return client_id


class IdentityResolver:
    """Resolves credentials against the portal identity provider."""

    async def _find_user(self, email: str) -> Optional[dict]:
        db = database.get_db()
        try:
            return await db.portal_users.find_one({"auth_email": email}, {"_id": 0})
        except PyMongoError as e:
            logger.error(f"Identity provider lookup failed for {email}: {e}")
            raise ProviderUnavailable("Sign-in is temporarily unavailable. Please try again.")

    async def _touch_last_login(self, email: str) -> None:
        db = database.get_db()
        try:
            await db.portal_users.update_one(
                {"auth_email": email},
                {"$set": {"last_login": datetime.now(timezone.utc).isoformat()}}
            )
        except PyMongoError as e:
            # The identity is already established; a stale last_login is acceptable.
            logger.warning(f"Failed to record last login for {email}: {e}")

    async def resolve(self, identifier: str, secret: str) -> Identity:
        """Resolve a username/email + password to an Identity."""
        email = normalize_identifier(identifier)
        portal_user = await self._find_user(email)

        if not portal_user or not portal_user.get("password_hash"):
            logger.info(f"Login rejected for {email}: unknown user")
            raise InvalidCredentials("Invalid credentials")

        if not verify_password(secret or "", portal_user["password_hash"]):
            logger.info(f"Login rejected for {email}: invalid password")
            raise InvalidCredentials("Invalid credentials")

        if portal_user.get("status", UserStatus.ACTIVE.value) != UserStatus.ACTIVE.value:
            logger.info(f"Login rejected for {email}: account disabled")
            raise InvalidCredentials("Account is not active")

        await self._touch_last_login(email)
        return Identity(email=email, role=portal_user.get("role", UserRole.ROLE_CLIENT.value))

    async def resolve_federated(self, assertion: str) -> Identity:
        """Resolve a federated provider assertion (signed JWT) to an Identity."""
        if not FEDERATED_JWT_SECRET:
            logger.error("Federated sign-in attempted but FEDERATED_JWT_SECRET is not set")
            raise ProviderUnavailable("Federated sign-in is not configured")

        options = {"verify_aud": FEDERATED_AUDIENCE is not None}
        try:
            claims = jwt.decode(
                assertion,
                FEDERATED_JWT_SECRET,
                algorithms=FEDERATED_JWT_ALGORITHMS,
                audience=FEDERATED_AUDIENCE,
                options=options,
            )
        except JWTError as e:
            logger.info(f"Federated assertion rejected: {e}")
            raise InvalidCredentials("Invalid federated assertion")

        email = (claims.get("email") or "").strip()
        if not email or claims.get("email_verified") is False:
            raise InvalidCredentials("Federated assertion has no verified email")

        portal_user = await self._find_user(email)
        if portal_user and portal_user.get("status", UserStatus.ACTIVE.value) != UserStatus.ACTIVE.value:
            raise InvalidCredentials("Account is not active")

        role = portal_user.get("role") if portal_user else UserRole.ROLE_CLIENT.value
        if portal_user:
            await self._touch_last_login(email)
        return Identity(email=email, role=role)

    async def register_credentials(
        self,
        identifier: str,
        secret: str,
        role: UserRole = UserRole.ROLE_CLIENT,
    ) -> Identity:
        """Create or replace the portal credentials for an identity."""
        email = normalize_identifier(identifier)
        user = PortalUser(auth_email=email, password_hash=hash_password(secret), role=role)
        doc = user.model_dump(mode="json")
        # Re-registering replaces the secret and role only; status and last login stay.
        on_insert = {key: doc.pop(key) for key in ("portal_user_id", "created_at", "status", "last_login")}

        db = database.get_db()
        try:
            await db.portal_users.update_one(
                {"auth_email": email},
                {
                    "$set": doc,
                    "$setOnInsert": on_insert,
                },
                upsert=True,
            )
        except PyMongoError as e:
            logger.error(f"Failed to register credentials for {email}: {e}")
            raise ProviderUnavailable("Could not save portal credentials")

        logger.info(f"Portal credentials registered for {email} ({role.value})")
        return Identity(email=email, role=role)

    async def remove_credentials(self, identifier: str) -> None:
        email = normalize_identifier(identifier)
        db = database.get_db()
        try:
            await db.portal_users.delete_one({"auth_email": email})
        except PyMongoError as e:
            logger.error(f"Failed to remove credentials for {email}: {e}")
            raise ProviderUnavailable("Could not remove portal credentials")


identity_resolver = IdentityResolver()
