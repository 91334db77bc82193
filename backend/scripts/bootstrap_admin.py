"""
Idempotent ADMIN bootstrap script.
Uses BOOTSTRAP_ADMIN_EMAIL and BOOTSTRAP_ADMIN_PASSWORD from env.
Creates the admin's portal credentials, or replaces the password and role if
they already exist. Never outputs plaintext passwords.

Usage (from backend/):
  python -m scripts.bootstrap_admin
"""
import asyncio
import os
import sys
from pathlib import Path

# Ensure backend root is on path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from dotenv import load_dotenv
load_dotenv(Path(__file__).resolve().parent.parent / ".env")


async def main() -> int:
    from auth import validate_password_strength
    from database import database
    from models import UserRole
    from services.identity_service import identity_resolver

    email = (os.environ.get("BOOTSTRAP_ADMIN_EMAIL") or "").strip()
    password = os.environ.get("BOOTSTRAP_ADMIN_PASSWORD") or ""
    if not email or not password:
        print("BOOTSTRAP_ADMIN_EMAIL and BOOTSTRAP_ADMIN_PASSWORD are required")
        return 1

    is_valid, error_msg = validate_password_strength(password)
    if not is_valid:
        print(f"Bootstrap: rejected - {error_msg}")
        return 1

    await database.connect()
    try:
        identity = await identity_resolver.register_credentials(email, password, UserRole.ROLE_ADMIN)
        print(f"Bootstrap: admin credentials registered for {identity.email}")
    finally:
        await database.close()
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
