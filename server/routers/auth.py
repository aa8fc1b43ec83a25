"""Authentication routes: registration, login, token refresh and sessions."""

from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, EmailStr, Field

from core.container import container
from core.config import Settings
from core.logging import get_logger
from middleware.auth import get_current_user_id
from services.user_auth import UserAuthService, get_auth_status

logger = get_logger(__name__)
router = APIRouter(prefix="/api/auth", tags=["auth"])


class RegisterRequest(BaseModel):
    email: EmailStr
    password: str
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    role: str = "user"


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class RefreshRequest(BaseModel):
    refreshToken: str


class LogoutRequest(BaseModel):
    refreshToken: Optional[str] = None


class RevokeAllRequest(BaseModel):
    currentToken: Optional[str] = None


def get_user_auth_service() -> UserAuthService:
    return container.user_auth_service()


def get_settings() -> Settings:
    return container.settings()


def _client_info(request: Request) -> dict:
    return {
        "user_agent": request.headers.get("user-agent"),
        "ip_address": request.client.host if request.client else None,
    }


@router.get("/status")
async def auth_status(settings: Settings = Depends(get_settings)):
    """Token lifetimes and available roles."""
    return {"success": True, "data": get_auth_status(settings)}


@router.post("/register", status_code=201)
async def register(
    body: RegisterRequest,
    request: Request,
    user_auth: UserAuthService = Depends(get_user_auth_service)
):
    user, tokens = await user_auth.register(
        email=body.email,
        password=body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        role=body.role,
        **_client_info(request)
    )
    return {
        "success": True,
        "data": {"user": user.to_public(), "tokens": tokens.to_dict()}
    }


@router.post("/login")
async def login(
    body: LoginRequest,
    request: Request,
    user_auth: UserAuthService = Depends(get_user_auth_service)
):
    user, tokens = await user_auth.login(
        email=body.email,
        password=body.password,
        **_client_info(request)
    )
    return {
        "success": True,
        "data": {"user": user.to_public(), "tokens": tokens.to_dict()}
    }


@router.post("/refresh")
async def refresh(
    body: RefreshRequest,
    request: Request,
    user_auth: UserAuthService = Depends(get_user_auth_service)
):
    """Exchange a refresh token for a new pair. The old token stops working."""
    tokens = await user_auth.refresh(body.refreshToken, **_client_info(request))
    return {"success": True, "data": {"tokens": tokens.to_dict()}}


@router.post("/logout")
async def logout(
    body: LogoutRequest,
    user_auth: UserAuthService = Depends(get_user_auth_service)
):
    await user_auth.logout(body.refreshToken)
    return {"success": True}


@router.get("/me")
async def me(
    user_id: str = Depends(get_current_user_id),
    user_auth: UserAuthService = Depends(get_user_auth_service)
):
    user = await user_auth.get_user(user_id)
    return {"success": True, "data": {"user": user.to_public()}}


@router.get("/sessions")
async def list_sessions(
    user_id: str = Depends(get_current_user_id),
    user_auth: UserAuthService = Depends(get_user_auth_service)
):
    sessions = await user_auth.list_sessions(user_id)
    return {"success": True, "data": {"sessions": sessions}}


@router.delete("/sessions/{session_id}")
async def revoke_session(
    session_id: str,
    user_id: str = Depends(get_current_user_id),
    user_auth: UserAuthService = Depends(get_user_auth_service)
):
    await user_auth.revoke_session(user_id, session_id)
    return {"success": True}


@router.delete("/sessions")
async def revoke_all_sessions(
    body: Optional[RevokeAllRequest] = None,
    user_id: str = Depends(get_current_user_id),
    user_auth: UserAuthService = Depends(get_user_auth_service)
):
    """Revoke every session except the one holding ``currentToken``."""
    revoked = await user_auth.revoke_all_sessions(
        user_id, keep_token=body.currentToken if body else None
    )
    return {"success": True, "data": {"revoked": revoked}}
