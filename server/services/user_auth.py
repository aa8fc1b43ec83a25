"""User authentication service: registration, login and refresh-token rotation."""

from typing import Any, Dict, List, Optional, Tuple

from core.cache import CacheService
from core.config import Settings
from core.database import Database
from core.exceptions import (
    AccountInactive,
    AuthError,
    Conflict,
    InvalidCredentials,
    NotFound,
    RefreshExhausted,
    ValidationFailed,
)
from core.logging import get_logger, log_auth_event
from models.auth import RefreshToken, User, USER_ROLES
from services.token_issuer import REFRESH, TokenClaims, TokenIssuer, TokenPair, hash_token

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8
SELF_REGISTER_ROLES = ("user", "craftsman")


class UserAuthService:
    """Handles user authentication and the server side of the token lifecycle.

    Refresh tokens are single use: a successful refresh revokes the consumed
    token and persists its replacement in the same family. Presenting an
    already-consumed token revokes the whole family.
    """

    def __init__(self, database: Database, token_issuer: TokenIssuer,
                 cache: CacheService, settings: Settings):
        self.database = database
        self.token_issuer = token_issuer
        self.cache = cache
        self.settings = settings

    async def register(
        self,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
        role: str = "user",
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Tuple[User, TokenPair]:
        """Create an account and open its first session."""
        if len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationFailed(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        if role not in SELF_REGISTER_ROLES:
            raise ValidationFailed(f"Role must be one of: {', '.join(SELF_REGISTER_ROLES)}")

        if await self.database.get_user_by_email(email):
            raise Conflict()

        user = await self.database.create_user(User.create(
            email=email,
            password=password,
            first_name=first_name,
            last_name=last_name,
            role=role,
        ))
        tokens = await self._open_session(user, user_agent=user_agent, ip_address=ip_address)

        log_auth_event(logger, "register", user_id=user.id, role=role)
        return user, tokens

    async def login(
        self,
        email: str,
        password: str,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Tuple[User, TokenPair]:
        user = await self.database.get_user_by_email(email)
        if not user:
            raise InvalidCredentials()

        if user.status == "suspended":
            raise AccountInactive("Account suspended", code="ACCOUNT_SUSPENDED")
        if user.status != "active":
            raise AccountInactive()

        if not user.verify_password(password):
            await self.database.record_failed_login(user.id)
            raise InvalidCredentials()

        await self.database.record_successful_login(user.id)
        tokens = await self._open_session(user, user_agent=user_agent, ip_address=ip_address)

        log_auth_event(logger, "login", user_id=user.id)
        return user, tokens

    async def refresh(
        self,
        refresh_token: str,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> TokenPair:
        """Exchange a refresh token for a new pair (rotation).

        Raises:
            RefreshExhausted: token invalid, expired, unknown, revoked or
                already consumed.
            AccountInactive: the owning account is no longer active.
        """
        try:
            payload = self.token_issuer.verify(refresh_token, expected_type=REFRESH)
        except AuthError as e:
            if e.code == "TOKEN_EXPIRED":
                raise RefreshExhausted("Refresh token expired", code="REFRESH_TOKEN_EXPIRED")
            raise RefreshExhausted()

        record = await self.database.get_refresh_token(payload["jti"])
        if record is None or record.token_hash != hash_token(refresh_token):
            raise RefreshExhausted()

        if record.revoked:
            revoked = await self.database.revoke_refresh_family(record.family)
            logger.warning("Refresh token reuse detected", user_id=record.user_id,
                           family=record.family, revoked=revoked)
            raise RefreshExhausted()

        if record.is_expired():
            raise RefreshExhausted("Refresh token expired", code="REFRESH_TOKEN_EXPIRED")

        user = await self.database.get_user_by_id(record.user_id)
        if user is None or not user.is_active:
            raise AccountInactive()

        # Conditional update: a concurrent refresh with the same token loses here
        if not await self.database.consume_refresh_token(record.jti):
            await self.database.revoke_refresh_family(record.family)
            raise RefreshExhausted()

        tokens = await self._open_session(user, family=record.family,
                                          user_agent=user_agent, ip_address=ip_address)
        log_auth_event(logger, "refresh", user_id=user.id, family=record.family)
        return tokens

    async def logout(self, refresh_token: Optional[str]) -> bool:
        """Revoke the given refresh token. Unknown or invalid tokens are ignored."""
        if not refresh_token:
            return False
        claims = self.token_issuer.decode(refresh_token)
        if not claims or not claims.get("jti"):
            return False
        record = await self.database.get_refresh_token(claims["jti"])
        if record is None or record.token_hash != hash_token(refresh_token):
            return False
        revoked = await self.database.consume_refresh_token(record.jti)
        log_auth_event(logger, "logout", user_id=record.user_id)
        return revoked

    async def authenticate(self, access_token: str) -> User:
        """Resolve the user behind an access token.

        Raises TokenExpired / TokenInvalid from verification, AuthError
        (``USER_NOT_FOUND``) or AccountInactive for account problems.
        """
        payload = self.token_issuer.verify(access_token)
        user = await self.database.get_user_by_id(payload["sub"])
        if user is None:
            raise AuthError("User not found", code="USER_NOT_FOUND")
        if user.status == "suspended":
            raise AccountInactive("Account suspended", code="ACCOUNT_SUSPENDED")
        if not user.is_active:
            raise AccountInactive()
        return user

    async def get_user(self, user_id: str) -> User:
        user = await self.database.get_user_by_id(user_id)
        if user is None:
            raise NotFound("User not found")
        return user

    async def list_sessions(self, user_id: str) -> List[Dict[str, Any]]:
        return [record.to_session() for record in await self.database.get_active_sessions(user_id)]

    async def revoke_session(self, user_id: str, session_id: str) -> None:
        if not await self.database.revoke_session(user_id, session_id):
            raise NotFound("Session not found")
        log_auth_event(logger, "revoke_session", user_id=user_id, session_id=session_id)

    async def revoke_all_sessions(self, user_id: str, keep_token: Optional[str] = None) -> int:
        """Revoke every session of the user except the one holding ``keep_token``."""
        keep_jti = None
        if keep_token:
            claims = self.token_issuer.decode(keep_token)
            if claims and claims.get("sub") == user_id:
                keep_jti = claims.get("jti")
        revoked = await self.database.revoke_user_tokens(user_id, except_jti=keep_jti)
        log_auth_event(logger, "revoke_all_sessions", user_id=user_id, revoked=revoked)
        return revoked

    async def suspend_user(self, user_id: str) -> int:
        """Suspend an account, kill its sessions and drop its cached listings."""
        if not await self.database.set_user_status(user_id, "suspended"):
            raise NotFound("User not found")
        revoked = await self.database.revoke_user_tokens(user_id)
        self.cache.invalidate_user(user_id)
        log_auth_event(logger, "suspend", user_id=user_id, revoked=revoked)
        return revoked

    async def _open_session(
        self,
        user: User,
        family: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> TokenPair:
        tokens = self.token_issuer.issue(
            TokenClaims(subject=user.id, email=user.email, role=user.role),
            family=family,
        )
        await self.database.save_refresh_token(RefreshToken(
            jti=tokens.refresh_jti,
            user_id=user.id,
            family=tokens.family,
            token_hash=hash_token(tokens.refresh_token),
            expires_at=tokens.refresh_expires_at,
            user_agent=user_agent[:512] if user_agent else None,
            ip_address=ip_address,
        ))
        return tokens


def get_auth_status(settings: Settings) -> Dict[str, Any]:
    """Public auth configuration exposed to the frontend."""
    return {
        "access_token_ttl": int(settings.access_token_ttl.total_seconds()),
        "refresh_token_ttl": int(settings.refresh_token_ttl.total_seconds()),
        "roles": list(USER_ROLES),
    }
