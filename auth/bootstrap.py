"""
auth/bootstrap.py -- Demo admin account provisioning.

Runs once during application startup, after the store is reachable. The
admin account is created if missing; if it already exists its password hash
is reset to the configured password so the demo credential always works.

This is a convenience for demo environments. Disable it with
ADMIN_BOOTSTRAP_ENABLED=false anywhere the credential matters.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError

from auth.exceptions import Conflict
from auth.store import CredentialStore
from auth.tokens import MAX_PASSWORD_BYTES, TokenService

logger = logging.getLogger("helfy.auth")


def ensure_admin_user(store: CredentialStore, tokens: TokenService, email: str, username: str, password: str) -> int | None:
    """Create or reset the admin account. Returns its id, or None on failure.

    A failure here is logged and startup continues: the API is still useful
    without the demo account.
    """
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        logger.error("Admin user error: password is longer than %d bytes", MAX_PASSWORD_BYTES)
        return None
    try:
        password_hash = tokens.hash_password(password)
        existing = store.find_user_by_email(email)
        if existing is None:
            try:
                user_id = store.create_user(email, username, password_hash)
                logger.info("Admin user created")
                return user_id
            except Conflict:
                # Another replica won the race, or the username is taken.
                existing = store.find_user_by_email(email)
                if existing is None:
                    logger.error("Admin user could not be created: username %r is taken", username)
                    return None
        store.update_password_hash(existing.id, password_hash)
        logger.info("Admin user ready")
        return existing.id
    except (SQLAlchemyError, ValueError) as exc:
        logger.error("Admin user error: %s", exc)
        return None
