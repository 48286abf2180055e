"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and routes do
the work; these only own the shape.

Layer rule: no imports from api/ or cdc/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass
class User:
    """A registered account.

    password_hash is the bcrypt hash and never leaves the server -- use
    public_fields() for anything that is rendered into a response.
    """

    email: str
    username: str
    password_hash: str
    id: int | None = None
    created_at: datetime | None = None

    def public_fields(self) -> dict:
        return {"id": self.id, "email": self.email, "username": self.username}


@dataclass
class SessionToken:
    """An opaque bearer token. Valid only while now < expires_at."""

    token: str
    user_id: int
    expires_at: datetime
    created_at: datetime | None = None


@dataclass
class AuthSession:
    """The outcome of a successful token check: who, and with which token."""

    user: User
    token: SessionToken
