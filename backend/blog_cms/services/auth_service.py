"""
Authentication orchestrator.

Ties together password hashing, the token codec, server-side sessions, the
access-token denylist, rate limiting, the user directory and the mailer.

Session lifecycle per login:
    no session -> active(sid) -> active(sid, rotated refresh jti) ... -> revoked

Every token carries the sid of the session it was minted for; deleting the
session (logout, password reset, expiry) invalidates all of them at once.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from blog_cms.core.config import AuthConfig
from blog_cms.core.exceptions import (
    AccountDisabledError,
    DuplicateEmailError,
    InvalidCredentialsError,
    InvalidOrExpiredTokenError,
    InvalidRefreshTokenError,
    InvalidTokenError,
    SessionInvalidError,
    UserNotFoundError,
    WeakPasswordError,
)
from blog_cms.core.kv_store import KeyValueStore
from blog_cms.core.logging_config import redact_email
from blog_cms.core.rate_limiter import RateLimiter, RateLimitScope
from blog_cms.core.redis_keys import RedisKeys
from blog_cms.core.security import (
    build_reset_url,
    dummy_password_hash,
    generate_reset_token,
    hash_password,
    normalize_email,
    validate_password_strength,
    verify_password,
)
from blog_cms.core.sessions import SessionManager, SessionRecord
from blog_cms.core.token_codec import TokenClaims, TokenCodec, TokenError
from blog_cms.core.token_denylist import TokenDenylist
from blog_cms.models.user import UserRole, UserStatus
from blog_cms.services.mail_service import MailDispatcher
from blog_cms.services.user_directory import UserDirectory, UserRecord

logger = logging.getLogger("blog_cms.auth")


@dataclass
class AuthTokens:
    access_token: str
    refresh_token: str
    session_id: str
    access_expires_in: int
    refresh_expires_in: int


class AuthService:
    def __init__(
        self,
        config: AuthConfig,
        store: KeyValueStore,
        users: UserDirectory,
        mailer: MailDispatcher,
        codec: Optional[TokenCodec] = None,
        sessions: Optional[SessionManager] = None,
        rate_limiter: Optional[RateLimiter] = None,
        denylist: Optional[TokenDenylist] = None,
    ):
        self.config = config
        self.store = store
        self.users = users
        self.mailer = mailer
        self.keys = RedisKeys(config)
        self.codec = codec or TokenCodec(config)
        self.sessions = sessions or SessionManager(store, self.keys, config.refresh_ttl_seconds)
        self.rate_limiter = rate_limiter or RateLimiter(
            store, self.keys, fixed_window=config.rate_limit_fixed_window
        )
        self.denylist = denylist or TokenDenylist(store, self.keys)

    # ------------------------------------------------------------------
    # Registration and login
    # ------------------------------------------------------------------

    async def register(self, name: str, email: str, password: str) -> UserRecord:
        """
        Create a CUSTOMER account.

        Raises:
            WeakPasswordError: Listing every password rule that is not met
            DuplicateEmailError: If the email is already registered
        """
        email = normalize_email(email)

        validation = validate_password_strength(password)
        if not validation.is_valid:
            raise WeakPasswordError(validation.errors)

        if await self.users.find_by_email(email) is not None:
            raise DuplicateEmailError()

        password_hash = await asyncio.to_thread(
            hash_password, password, self.config.bcrypt_salt_rounds
        )
        user = await self.users.create(
            name=name.strip(),
            email=email,
            password_hash=password_hash,
            role=UserRole.CUSTOMER.value,
            status=UserStatus.ACTIVE.value,
        )
        logger.info(f"User registered: {user.id} ({redact_email(email)})")
        return user

    async def login(
        self,
        email: str,
        password: str,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> AuthTokens:
        """
        Authenticate with email and password and open a new session.

        Raises:
            TooManyAttemptsError: Before any credential check once the limit is reached
            AccountDisabledError: Existing account that is not ACTIVE
            InvalidCredentialsError: Unknown email or wrong password
        """
        email = normalize_email(email)
        await self.rate_limiter.check_and_raise_if_exceeded(
            RateLimitScope.LOGIN,
            email,
            self.config.login_max_attempts,
            self.config.login_window_seconds,
        )

        user = await self.users.find_by_email(email)
        if user is None:
            # Same bcrypt cost as a real mismatch
            await asyncio.to_thread(
                verify_password, password, dummy_password_hash(self.config.bcrypt_salt_rounds)
            )
            await self._record_login_failure(email)
            raise InvalidCredentialsError()

        # Disabled status is reported before the password check (accepted disclosure)
        if not user.is_active:
            await self._record_login_failure(email)
            logger.warning(f"Login refused for disabled account {user.id}")
            raise AccountDisabledError()

        password_ok = await asyncio.to_thread(verify_password, password, user.password_hash)
        if not password_ok:
            await self._record_login_failure(email)
            raise InvalidCredentialsError()

        await self.rate_limiter.clear(RateLimitScope.LOGIN, email)

        session_id = await self.sessions.create(user.id, user_agent, ip_address)
        pair = self.codec.issue_token_pair(self._claims_for(user, session_id))
        await self.store.set_json(
            self.keys.refresh_token(pair.refresh_jti),
            {"userId": user.id, "sessionId": session_id},
            self.config.refresh_ttl_seconds,
        )

        logger.info(f"User {user.id} logged in, session {session_id}")
        return self._tokens(pair.access_token, pair.refresh_token, session_id)

    async def _record_login_failure(self, email: str) -> None:
        attempts = await self.rate_limiter.record_failure(
            RateLimitScope.LOGIN, email, self.config.login_window_seconds
        )
        logger.info(f"Failed login for {redact_email(email)} ({attempts} in window)")

    # ------------------------------------------------------------------
    # Refresh and logout
    # ------------------------------------------------------------------

    async def refresh(self, user_id: str, refresh_jti: str, session_id: str) -> AuthTokens:
        """
        Rotate the token pair of a live session.

        The caller has already validated the refresh token itself (see
        authenticate_refresh_token). The old refresh record is consumed, a new
        one written and the session TTL slid forward before the tokens are
        handed out.

        Raises:
            SessionInvalidError: Session missing or owned by another user
            UserNotFoundError: User deleted since the session was opened
            AccountDisabledError: User disabled since the session was opened
        """
        session = await self.sessions.validate(session_id)
        if session is None or session.user_id != user_id:
            raise SessionInvalidError()

        user = await self.users.find_by_id(user_id)
        if user is None:
            raise UserNotFoundError()
        if not user.is_active:
            raise AccountDisabledError()

        pair = self.codec.issue_token_pair(self._claims_for(user, session_id))

        ttl = self.config.refresh_ttl_seconds
        results = await asyncio.gather(
            self.store.delete(self.keys.refresh_token(refresh_jti)),
            self.store.set_json(
                self.keys.refresh_token(pair.refresh_jti),
                {"userId": user.id, "sessionId": session_id},
                ttl,
            ),
            self.sessions.touch(session_id, ttl),
            return_exceptions=True,
        )
        for step, result in zip(("delete old refresh record", "store new refresh record", "slide session"), results):
            if isinstance(result, Exception):
                logger.error(f"Refresh of session {session_id}: failed to {step}: {result}")
        if results[2] is False:
            logger.warning(f"Session {session_id} expired while refreshing")

        logger.debug(f"Session {session_id} rotated")
        return self._tokens(pair.access_token, pair.refresh_token, session_id)

    async def logout(
        self,
        session_id: Optional[str],
        refresh_jti: Optional[str] = None,
        access_token: Optional[str] = None,
    ) -> Dict[str, bool]:
        """
        End a session. Each cleanup step runs independently and failures are
        only logged, so logout always succeeds from the caller's point of view.
        """
        steps = []
        if session_id:
            steps.append(("delete session", self.sessions.delete(session_id)))
        if refresh_jti:
            steps.append(("delete refresh record", self.store.delete(self.keys.refresh_token(refresh_jti))))
        if access_token:
            steps.append(("denylist access token", self.block_access_token(access_token)))

        results = await asyncio.gather(*(coro for _, coro in steps), return_exceptions=True)
        for (step, _), result in zip(steps, results):
            if isinstance(result, Exception):
                logger.warning(f"Logout: failed to {step}: {result}")

        if session_id:
            logger.info(f"Session {session_id} logged out")
        return {"success": True}

    async def block_access_token(self, access_token: str) -> bool:
        """Denylist a genuine access token until its natural expiry."""
        try:
            claims = self.codec.verify_access_token(access_token)
        except TokenError:
            return False
        ttl = self.codec.remaining_ttl_seconds(access_token)
        return await self.denylist.block(claims.jti, ttl)

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    async def forgot_password(self, email: str, ip_address: Optional[str] = None) -> Dict[str, bool]:
        """
        Start a password reset. Always reports success so callers cannot tell
        whether an account exists.

        Raises:
            TooManyAttemptsError: If the email or the client IP is over its limit
        """
        email = normalize_email(email)
        max_attempts = self.config.forgot_password_max_attempts
        window = self.config.forgot_password_window_seconds

        await self.rate_limiter.check_and_raise_if_exceeded(
            RateLimitScope.FORGOT_PASSWORD_EMAIL, email, max_attempts, window
        )
        if ip_address:
            await self.rate_limiter.check_and_raise_if_exceeded(
                RateLimitScope.FORGOT_PASSWORD_IP, ip_address, max_attempts, window
            )

        await self.rate_limiter.record_failure(RateLimitScope.FORGOT_PASSWORD_EMAIL, email, window)
        if ip_address:
            await self.rate_limiter.record_failure(RateLimitScope.FORGOT_PASSWORD_IP, ip_address, window)

        user = await self.users.find_by_email(email)
        if user is None or not user.is_active:
            logger.debug(f"Password reset requested for unknown or inactive {redact_email(email)}")
            return {"success": True}

        token = generate_reset_token()
        await self.store.set(
            self.keys.reset_token(token), user.id, self.config.reset_token_ttl_seconds
        )
        reset_url = build_reset_url(self.config.app_origin, token)

        try:
            await self.mailer.send_password_reset_email(email, user.name, reset_url)
        except Exception:
            logger.exception(f"Failed to send password reset email to {redact_email(email)}")

        return {"success": True}

    async def reset_password(self, token: str, new_password: str) -> Dict[str, bool]:
        """
        Set a new password with a reset token and end every session of the user.

        Raises:
            WeakPasswordError: If the new password breaks any rule
            InvalidOrExpiredTokenError: Unknown or used token, or the account is gone or disabled
        """
        validation = validate_password_strength(new_password)
        if not validation.is_valid:
            raise WeakPasswordError(validation.errors)

        # Single use: consumed before any slow work
        user_id = await self.store.getdel(self.keys.reset_token(token))
        if not user_id:
            raise InvalidOrExpiredTokenError()

        user = await self.users.find_by_id(user_id)
        if user is None or not user.is_active:
            raise InvalidOrExpiredTokenError()

        password_hash = await asyncio.to_thread(
            hash_password, new_password, self.config.bcrypt_salt_rounds
        )
        await self.users.update_password_hash(user.id, password_hash)

        revoked = await self.sessions.revoke_all_for_user(user.id)
        logger.info(f"Password reset for user {user.id}, {revoked} session(s) revoked")
        return {"success": True}

    # ------------------------------------------------------------------
    # Token policies and profile
    # ------------------------------------------------------------------

    async def authenticate_access_token(self, token: str) -> TokenClaims:
        """
        Full access check: signature and expiry, live session, not denylisted,
        user still active.
        """
        try:
            claims = self.codec.verify_access_token(token)
        except TokenError as e:
            raise InvalidTokenError() from e

        if not claims.sid:
            raise InvalidTokenError()
        if not await self.sessions.exists(claims.sid):
            raise SessionInvalidError()
        if await self.denylist.is_blocked(claims.jti):
            raise InvalidTokenError("Token has been revoked")

        await self._require_active_user(claims.sub, InvalidTokenError)
        return claims

    async def authenticate_refresh_token(self, token: str) -> TokenClaims:
        """
        Full refresh check: signature and expiry, live session, unconsumed
        refresh record bound to the same user and session, user still active.
        """
        try:
            claims = self.codec.verify_refresh_token(token)
        except TokenError as e:
            raise InvalidRefreshTokenError() from e

        if not claims.sid:
            raise InvalidRefreshTokenError()
        if not await self.sessions.exists(claims.sid):
            raise SessionInvalidError()

        record = await self.store.get_json(self.keys.refresh_token(claims.jti))
        if (
            not isinstance(record, dict)
            or record.get("userId") != claims.sub
            or record.get("sessionId") != claims.sid
        ):
            raise InvalidRefreshTokenError()

        await self._require_active_user(claims.sub, InvalidRefreshTokenError)
        return claims

    async def _require_active_user(self, user_id: str, missing_error) -> UserRecord:
        user = await self.users.find_by_id(user_id)
        if user is None:
            raise missing_error()
        if not user.is_active:
            raise AccountDisabledError()
        return user

    async def get_profile(self, user_id: str) -> UserRecord:
        user = await self.users.find_by_id(user_id)
        if user is None:
            raise UserNotFoundError()
        return user

    async def list_sessions(self, user_id: str) -> List[SessionRecord]:
        return await self.sessions.list_for_user(user_id)

    async def revoke_all_sessions(self, user_id: str) -> int:
        return await self.sessions.revoke_all_for_user(user_id)

    # ------------------------------------------------------------------

    @staticmethod
    def _claims_for(user: UserRecord, session_id: str) -> Dict[str, Any]:
        return {"sub": user.id, "email": user.email, "role": user.role, "sid": session_id}

    def _tokens(self, access_token: str, refresh_token: str, session_id: str) -> AuthTokens:
        return AuthTokens(
            access_token=access_token,
            refresh_token=refresh_token,
            session_id=session_id,
            access_expires_in=self.config.access_ttl_seconds,
            refresh_expires_in=self.config.refresh_ttl_seconds,
        )
