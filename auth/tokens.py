"""
auth/tokens.py -- Password hashing and opaque session-token lifecycle.

Security design decisions:
  Tokens: secrets.token_urlsafe(32) -- 256 bits from the OS CSPRNG, no
       embedded structure. A token means something only while a matching,
       unexpired row exists in user_tokens. Nothing is cached here: every
       authenticate() call re-reads the store, so logout takes effect on the
       very next request.

  Passwords: bcrypt, used directly (no passlib wrapper). The cost factor is
       fixed per process (BCRYPT_ROUNDS, default 10). A dummy hash built at
       the same cost is checked when the identifier matches no account, so
       "unknown user" and "wrong password" take the same time and raise the
       same Unauthorized("Invalid credentials").

  Collisions: a duplicate token value is astronomically unlikely. If the
       UNIQUE constraint ever fires, issue_token() retries once with a fresh
       value and then gives up with Internal.

Layer rule: no imports from api/ or cdc/.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt

from auth.exceptions import Conflict, Internal, Unauthorized
from auth.models import AuthSession, SessionToken, User

if TYPE_CHECKING:
    from auth.store import CredentialStore

logger = logging.getLogger("helfy.auth")

DEFAULT_TOKEN_LIFETIME = timedelta(hours=24)
DEFAULT_BCRYPT_ROUNDS = 10
_TOKEN_BYTES = 32

# bcrypt only looks at the first 72 bytes of input; bcrypt>=5 rejects longer.
MAX_PASSWORD_BYTES = 72


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage)
# ---------------------------------------------------------------------------


def hash_password(plain: str, rounds: int = DEFAULT_BCRYPT_ROUNDS) -> str:
    """Return a salted bcrypt hash of the given plaintext password.

    Callers cap input at MAX_PASSWORD_BYTES: older bcrypt releases truncate
    past it and newer ones raise ValueError.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    A malformed stored hash counts as a mismatch rather than an error.
    """
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


def generate_token() -> str:
    return secrets.token_urlsafe(_TOKEN_BYTES)


# ---------------------------------------------------------------------------
# Token service
# ---------------------------------------------------------------------------


class TokenService:
    """Issues, validates and revokes session tokens against a CredentialStore.

    clock is injectable so expiry can be tested without sleeping; it must
    return timezone-aware UTC datetimes.
    """

    def __init__(
        self,
        store: CredentialStore,
        lifetime: timedelta = DEFAULT_TOKEN_LIFETIME,
        rounds: int = DEFAULT_BCRYPT_ROUNDS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.lifetime = lifetime
        self.rounds = rounds
        self._clock = clock
        # Built once so the first failed login is not measurably faster.
        self._dummy_hash = hash_password("helfy_timing_dummy", rounds)

    def hash_password(self, plain: str) -> str:
        return hash_password(plain, self.rounds)

    def issue_token(self, user_id: int) -> SessionToken:
        """Create and persist a token valid for exactly `lifetime` from now."""
        for attempt in (1, 2):
            now = self._clock()
            session_token = SessionToken(
                token=generate_token(),
                user_id=user_id,
                expires_at=now + self.lifetime,
                created_at=now,
            )
            try:
                self.store.create_token(user_id, session_token.token, session_token.expires_at)
            except Conflict:
                logger.warning("Token collision on insert for user %s (attempt %d)", user_id, attempt)
                continue
            return session_token
        raise Internal("Could not issue token")

    def verify_credentials(self, identifier: str, password: str) -> User:
        """Return the user whose email or username is identifier and whose
        password matches. Raises Unauthorized otherwise.

        bcrypt runs on every path -- do NOT return early before checkpw.
        """
        user = self.store.find_user_by_identifier(identifier)
        if user is None:
            verify_password(password, self._dummy_hash)
            raise Unauthorized("Invalid credentials")
        if not verify_password(password, user.password_hash):
            raise Unauthorized("Invalid credentials")
        return user

    def authenticate(self, token: str) -> AuthSession:
        found = self.store.find_valid_token(token, self._clock())
        if found is None:
            raise Unauthorized("Invalid or expired token")
        user, session_token = found
        return AuthSession(user=user, token=session_token)

    def revoke(self, token: str) -> None:
        self.store.delete_token(token)

    def purge_expired(self) -> int:
        """Optional sweep; expired tokens are already unusable without it."""
        return self.store.purge_expired_tokens(self._clock())
