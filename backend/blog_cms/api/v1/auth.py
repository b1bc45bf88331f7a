from typing import Optional

from fastapi import APIRouter, Depends, Request, Response, status

from blog_cms.api.deps import (
    ACCESS_COOKIE,
    REFRESH_COOKIE,
    get_auth_service,
    get_client_ip,
    get_current_claims,
    get_refresh_claims,
    get_user_agent,
)
from blog_cms.core.config import settings
from blog_cms.core.token_codec import TokenClaims, TokenCodec
from blog_cms.schemas.auth import (
    ForgotPasswordRequest,
    LoginRequest,
    RegisterRequest,
    ResetPasswordRequest,
    SessionInfo,
    SessionListResponse,
    SuccessResponse,
)
from blog_cms.schemas.user import UserPublic
from blog_cms.services.auth_service import AuthService, AuthTokens

router = APIRouter()


def _set_auth_cookies(response: Response, tokens: AuthTokens) -> None:
    response.set_cookie(
        key=ACCESS_COOKIE,
        value=tokens.access_token,
        httponly=True,
        secure=settings.COOKIE_SECURE,
        samesite="strict",
        max_age=tokens.access_expires_in,
    )
    response.set_cookie(
        key=REFRESH_COOKIE,
        value=tokens.refresh_token,
        httponly=True,
        secure=settings.COOKIE_SECURE,
        samesite="strict",
        max_age=tokens.refresh_expires_in,
    )


def _clear_auth_cookies(response: Response) -> None:
    for name in (ACCESS_COOKIE, REFRESH_COOKIE):
        response.delete_cookie(
            key=name,
            httponly=True,
            secure=settings.COOKIE_SECURE,
            samesite="strict",
        )


@router.post("/register", response_model=UserPublic, status_code=status.HTTP_201_CREATED)
async def register(
    payload: RegisterRequest,
    auth_service: AuthService = Depends(get_auth_service),
) -> UserPublic:
    """Create a customer account. Returns the public user projection."""
    user = await auth_service.register(payload.name, payload.email, payload.password)
    return UserPublic.model_validate(user)


@router.post("/login", response_model=SuccessResponse)
async def login(
    payload: LoginRequest,
    request: Request,
    response: Response,
    auth_service: AuthService = Depends(get_auth_service),
) -> SuccessResponse:
    """
    Authenticate with email and password.

    Tokens are delivered only as httpOnly cookies, never in the body.
    """
    tokens = await auth_service.login(
        payload.email,
        payload.password,
        user_agent=get_user_agent(request),
        ip_address=get_client_ip(request),
    )
    _set_auth_cookies(response, tokens)
    return SuccessResponse()


@router.post("/refresh", response_model=SuccessResponse)
async def refresh(
    response: Response,
    claims: TokenClaims = Depends(get_refresh_claims),
    auth_service: AuthService = Depends(get_auth_service),
) -> SuccessResponse:
    """Rotate both tokens for the caller's session."""
    tokens = await auth_service.refresh(claims.sub, claims.jti, claims.sid)
    _set_auth_cookies(response, tokens)
    return SuccessResponse()


@router.post("/logout", response_model=SuccessResponse)
async def logout(
    request: Request,
    response: Response,
    auth_service: AuthService = Depends(get_auth_service),
) -> SuccessResponse:
    """
    End the caller's session. Works with expired or partially missing
    tokens and always clears the auth cookies.
    """
    refresh_token = request.cookies.get(REFRESH_COOKIE)
    access_token = request.cookies.get(ACCESS_COOKIE) or TokenCodec.extract_token_from_header(
        request.headers.get("Authorization")
    )

    session_id: Optional[str] = None
    refresh_jti: Optional[str] = None

    refresh_payload = TokenCodec.decode_unsafe(refresh_token)
    if refresh_payload:
        session_id = refresh_payload.get("sid")
        refresh_jti = refresh_payload.get("jti")

    if not session_id:
        access_payload = TokenCodec.decode_unsafe(access_token)
        if access_payload:
            session_id = access_payload.get("sid")

    if session_id:
        await auth_service.logout(session_id, refresh_jti, access_token)

    _clear_auth_cookies(response)
    return SuccessResponse()


@router.post("/forgot-password", response_model=SuccessResponse)
async def forgot_password(
    payload: ForgotPasswordRequest,
    request: Request,
    auth_service: AuthService = Depends(get_auth_service),
) -> SuccessResponse:
    """Request a reset link. The response is the same whether or not the account exists."""
    await auth_service.forgot_password(payload.email, ip_address=get_client_ip(request))
    return SuccessResponse()


@router.post("/reset-password", response_model=SuccessResponse)
async def reset_password(
    payload: ResetPasswordRequest,
    auth_service: AuthService = Depends(get_auth_service),
) -> SuccessResponse:
    await auth_service.reset_password(payload.token, payload.password)
    return SuccessResponse()


@router.get("/me", response_model=UserPublic)
async def read_current_user(
    claims: TokenClaims = Depends(get_current_claims),
    auth_service: AuthService = Depends(get_auth_service),
) -> UserPublic:
    user = await auth_service.get_profile(claims.sub)
    return UserPublic.model_validate(user)


@router.get("/sessions", response_model=SessionListResponse)
async def list_sessions(
    claims: TokenClaims = Depends(get_current_claims),
    auth_service: AuthService = Depends(get_auth_service),
) -> SessionListResponse:
    """Active sessions of the current user, oldest first."""
    records = await auth_service.list_sessions(claims.sub)
    sessions = [
        SessionInfo(
            session_id=record.session_id,
            user_agent=record.user_agent,
            ip_address=record.ip_address,
            created_at=record.created_at or None,
            current=record.session_id == claims.sid,
        )
        for record in records
    ]
    return SessionListResponse(sessions=sessions, total=len(sessions))
