"""User authentication models."""

import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlmodel import SQLModel, Field, Column, DateTime
from sqlalchemy import func
import bcrypt

USER_ROLES = ("user", "craftsman", "admin")
USER_STATUSES = ("active", "suspended", "deleted")


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(SQLModel, table=True):
    """User account for authentication."""

    __tablename__ = "users"

    id: str = Field(default_factory=_new_id, primary_key=True, max_length=36)
    email: str = Field(unique=True, index=True, max_length=255)
    password_hash: str = Field(max_length=255)
    first_name: str = Field(max_length=100)
    last_name: str = Field(max_length=100)
    role: str = Field(default="user", max_length=20)
    status: str = Field(default="active", max_length=20)
    failed_login_attempts: int = Field(default=0)
    created_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )
    last_login: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True)
    )

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def set_password(self, password: str) -> None:
        """Hash and set password using bcrypt."""
        salt = bcrypt.gensalt(rounds=12)
        self.password_hash = bcrypt.hashpw(password.encode('utf-8'), salt).decode('utf-8')

    def verify_password(self, password: str) -> bool:
        """Verify password against stored hash."""
        return bcrypt.checkpw(
            password.encode('utf-8'),
            self.password_hash.encode('utf-8')
        )

    def to_public(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "role": self.role,
            "status": self.status,
        }

    @classmethod
    def create(cls, email: str, password: str, first_name: str, last_name: str,
               role: str = "user") -> "User":
        """Factory method to create a user with hashed password."""
        user = cls(
            email=email.lower().strip(),
            password_hash="",  # Will be set below
            first_name=first_name.strip(),
            last_name=last_name.strip(),
            role=role,
        )
        user.set_password(password)
        return user


class RefreshToken(SQLModel, table=True):
    """Server-side record of an issued refresh token.

    Only the sha256 digest of the token is stored. ``revoked`` is set when the
    token is consumed by a refresh (rotation), on logout, or by an
    administrative revocation.
    """

    __tablename__ = "refresh_tokens"

    id: str = Field(default_factory=_new_id, primary_key=True, max_length=36)
    jti: str = Field(unique=True, index=True, max_length=64)
    user_id: str = Field(foreign_key="users.id", index=True, max_length=36)
    family: str = Field(index=True, max_length=64)
    token_hash: str = Field(max_length=64)
    expires_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    revoked: bool = Field(default=False)
    user_agent: Optional[str] = Field(default=None, max_length=512)
    ip_address: Optional[str] = Field(default=None, max_length=64)
    created_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or _utcnow()
        expires_at = self.expires_at
        # SQLite hands back naive datetimes
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at < now

    def to_session(self) -> dict:
        return {
            "id": self.id,
            "user_agent": self.user_agent,
            "ip_address": self.ip_address,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }
