"""
API request and response models for the Helfy REST endpoints.

These Pydantic v2 models define the HTTP transport contract. They are
intentionally separate from the dataclasses in auth/models.py, which own the
internal domain representation. Route handlers map between the two.

Request fields are Optional on purpose: a missing field is a 400 with a
specific message produced by the route, not Pydantic's generic 422.
"""

from typing import Optional

from pydantic import BaseModel

from auth.models import User

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Body for POST /api/auth/login.

    The identifier may arrive as either "email" or "username"; it is matched
    against both columns.
    """

    email: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None

    @property
    def identifier(self) -> Optional[str]:
        return self.email or self.username


class RegisterRequest(BaseModel):
    email: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class PublicUser(BaseModel):
    """The only user shape that leaves the server. No hash field exists here."""

    id: int
    email: str
    username: str

    @classmethod
    def from_user(cls, user: User) -> "PublicUser":
        return cls(**user.public_fields())


class TokenResponse(BaseModel):
    success: bool = True
    token: str
    user: PublicUser


class UserEnvelope(BaseModel):
    success: bool = True
    user: PublicUser


class SuccessResponse(BaseModel):
    success: bool = True


class HealthResponse(BaseModel):
    status: str = "ok"
    timestamp: str


class ErrorResponse(BaseModel):
    """Uniform error envelope returned by every exception handler."""

    error: str
    code: str
