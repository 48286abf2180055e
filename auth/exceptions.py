"""
auth/exceptions.py -- Typed exceptions for auth failures.

Every error the auth flow can surface to a client is one of four kinds. The
API layer maps AuthError to a JSON body using status_code/code/message, so
the message here is exactly what the client sees. Keep messages generic:
never include hashes, stack traces, or whether an email is registered.
"""


class AuthError(Exception):
    """Base class for errors rendered to the client."""

    status_code = 500
    code = "internal_error"
    default_message = "Internal server error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidInput(AuthError):
    """Malformed or missing request fields."""

    status_code = 400
    code = "invalid_input"
    default_message = "Invalid request"


class Unauthorized(AuthError):
    """
    Bad credentials, or a missing, unknown, or expired token.

    Login uses one message for unknown user and wrong password so callers
    cannot enumerate accounts.
    """

    status_code = 401
    code = "unauthorized"
    default_message = "Invalid credentials"


class Conflict(AuthError):
    """Email, username, or token value already taken."""

    status_code = 409
    code = "conflict"
    default_message = "User already exists"


class Internal(AuthError):
    """Unexpected server-side failure. Details go to the log, not the client."""
