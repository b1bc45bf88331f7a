from functools import lru_cache
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer

from blog_cms.core.config import settings
from blog_cms.core.exceptions import InvalidRefreshTokenError, InvalidTokenError
from blog_cms.core.kv_store import KeyValueStore, get_kv_store
from blog_cms.core.token_codec import TokenClaims
from blog_cms.db.session import AsyncSessionLocal
from blog_cms.services.auth_service import AuthService
from blog_cms.services.mail_service import BrevoMailService, MailDispatcher
from blog_cms.services.user_directory import SqlAlchemyUserDirectory, UserDirectory

ACCESS_COOKIE = "accessToken"
REFRESH_COOKIE = "refreshToken"

# Cookies are the primary transport; the header is accepted for API clients
oauth2_scheme = OAuth2PasswordBearer(tokenUrl=f"{settings.API_V1_STR}/auth/login", auto_error=False)


def get_user_directory() -> UserDirectory:
    return SqlAlchemyUserDirectory(AsyncSessionLocal)


@lru_cache()
def get_mailer() -> MailDispatcher:
    return BrevoMailService(
        api_key=settings.BREVO_API_KEY,
        sender_email=settings.BREVO_SENDER_EMAIL,
        sender_name=settings.BREVO_SENDER_NAME,
        reset_expires_minutes=max(1, settings.RESET_TOKEN_TTL_SECONDS // 60),
        timeout=settings.MAIL_REQUEST_TIMEOUT,
    )


def get_store() -> KeyValueStore:
    return get_kv_store()


def get_auth_service(
    store: KeyValueStore = Depends(get_store),
    users: UserDirectory = Depends(get_user_directory),
    mailer: MailDispatcher = Depends(get_mailer),
) -> AuthService:
    return AuthService(settings.auth_config(), store, users, mailer)


def get_client_ip(request: Request) -> Optional[str]:
    """
    Client address for rate limiting and session metadata.
    Proxy headers are only honoured when TRUST_PROXY_HEADERS is set.
    """
    if settings.TRUST_PROXY_HEADERS:
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()
        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            return real_ip.strip()
    return request.client.host if request.client else None


def get_user_agent(request: Request) -> Optional[str]:
    user_agent = request.headers.get("User-Agent")
    return user_agent[:512] if user_agent else None


def _token_from_request(request: Request, cookie_name: str, header_token: Optional[str]) -> Optional[str]:
    return request.cookies.get(cookie_name) or header_token


async def get_current_claims(
    request: Request,
    token: Optional[str] = Depends(oauth2_scheme),
    auth_service: AuthService = Depends(get_auth_service),
) -> TokenClaims:
    """
    Claims of the caller's access token after the full access check.

    Raises:
        InvalidTokenError: No token, or it fails any check
        SessionInvalidError: The token's session has ended
        AccountDisabledError: The user has been disabled
    """
    access_token = _token_from_request(request, ACCESS_COOKIE, token)
    if not access_token:
        raise InvalidTokenError()
    return await auth_service.authenticate_access_token(access_token)


async def get_refresh_claims(
    request: Request,
    token: Optional[str] = Depends(oauth2_scheme),
    auth_service: AuthService = Depends(get_auth_service),
) -> TokenClaims:
    refresh_token = _token_from_request(request, REFRESH_COOKIE, token)
    if not refresh_token:
        raise InvalidRefreshTokenError()
    return await auth_service.authenticate_refresh_token(refresh_token)
