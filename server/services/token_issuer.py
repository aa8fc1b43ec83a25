"""JWT access/refresh token issuing and verification."""

import hashlib
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from jose import jwt, JWTError, ExpiredSignatureError

from core.config import Settings
from core.exceptions import TokenExpired, TokenInvalid
from core.logging import get_logger

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"

_REQUIRED_CLAIMS = {
    ACCESS: ("sub", "exp", "email", "role"),
    REFRESH: ("sub", "exp", "jti", "fam"),
}


@dataclass(frozen=True)
class TokenClaims:
    """Identity claims embedded in an access token."""

    subject: str
    email: str
    role: str = "user"


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    refresh_jti: str
    family: str
    refresh_expires_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "expiresIn": self.expires_in,
        }


def hash_token(token: str) -> str:
    """Digest stored server-side instead of the raw refresh token."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class TokenIssuer:
    """Signs and verifies HS256 token pairs with a server-held secret.

    Access tokens are short lived and carry the user's identity; refresh
    tokens are long lived, carry a unique ``jti`` and a ``fam`` (family) id
    shared by every token descending from the same login.
    """

    def __init__(
        self,
        secret_key: str,
        algorithm: str = "HS256",
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=7),
        now: Optional[Callable[[], datetime]] = None,
    ):
        self._secret_key = secret_key
        self._algorithm = algorithm
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self._now = now or (lambda: datetime.now(timezone.utc))

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenIssuer":
        return cls(
            secret_key=settings.jwt_secret_key,
            algorithm=settings.jwt_algorithm,
            access_ttl=settings.access_token_ttl,
            refresh_ttl=settings.refresh_token_ttl,
        )

    def issue(self, claims: TokenClaims, family: Optional[str] = None) -> TokenPair:
        """Sign a new access/refresh pair.

        Passing ``family`` keeps the refresh token in an existing rotation
        chain; otherwise a new family is started.
        """
        issued_at = self._now()
        family = family or uuid.uuid4().hex
        jti = uuid.uuid4().hex
        refresh_expires_at = issued_at + self.refresh_ttl

        access_token = jwt.encode(
            {
                "sub": claims.subject,
                "email": claims.email,
                "role": claims.role,
                "type": ACCESS,
                "iat": issued_at,
                "exp": issued_at + self.access_ttl,
            },
            self._secret_key,
            algorithm=self._algorithm,
        )
        refresh_token = jwt.encode(
            {
                "sub": claims.subject,
                "fam": family,
                "jti": jti,
                "type": REFRESH,
                "iat": issued_at,
                "exp": refresh_expires_at,
            },
            self._secret_key,
            algorithm=self._algorithm,
        )

        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=int(self.access_ttl.total_seconds()),
            refresh_jti=jti,
            family=family,
            refresh_expires_at=refresh_expires_at,
        )

    def verify(self, token: str, expected_type: str = ACCESS) -> Dict[str, Any]:
        """Check signature, expiry and token type.

        Raises:
            TokenExpired: the token is correctly signed but past ``exp``.
            TokenInvalid: anything else (malformed, bad signature, wrong type,
                missing claims).
        """
        if not token:
            raise TokenInvalid("Token is empty")

        try:
            payload = jwt.decode(token, self._secret_key, algorithms=[self._algorithm])
        except ExpiredSignatureError:
            # jose checks the signature before the claims, so this token is genuine
            logger.debug("Token expired", token_type=expected_type)
            raise TokenExpired()
        except JWTError as e:
            logger.debug("Token verification failed", token_type=expected_type, error=str(e))
            raise TokenInvalid()

        if payload.get("type") != expected_type:
            raise TokenInvalid(f"Expected {expected_type} token")

        missing = [name for name in _REQUIRED_CLAIMS.get(expected_type, ()) if not payload.get(name)]
        if missing:
            raise TokenInvalid(f"Token missing claims: {', '.join(missing)}")

        return payload

    def decode(self, token: str) -> Optional[Dict[str, Any]]:
        """Read claims without verification. Never use for authorization."""
        try:
            return jwt.get_unverified_claims(token)
        except JWTError:
            return None
