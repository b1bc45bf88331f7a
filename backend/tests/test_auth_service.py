"""
Tests for blog_cms/services/auth_service.py - Registration, login, rotation, logout and password reset.
"""
import asyncio

import pytest
from unittest.mock import AsyncMock

STRONG_PASSWORD = "Str0ng!Passw0rd"
LOGIN_WINDOW = 15 * 60
REFRESH_TTL = 7 * 24 * 60 * 60


async def _login(auth_service, email="alice@example.com", password=STRONG_PASSWORD, **kwargs):
    return await auth_service.login(email, password, **kwargs)


class TestRegister:
    @pytest.mark.asyncio
    async def test_creates_active_customer(self, auth_service, user_directory):
        user = await auth_service.register("  Alice  ", "  Alice@Example.com ", STRONG_PASSWORD)

        assert user.name == "Alice"
        assert user.email == "alice@example.com"
        assert user.role == "CUSTOMER"
        assert user.status == "ACTIVE"
        stored = user_directory.users[user.id]
        assert stored.password_hash.startswith("$2b$04$")
        assert STRONG_PASSWORD not in stored.password_hash

    @pytest.mark.asyncio
    async def test_weak_password_reports_every_rule(self, auth_service):
        from blog_cms.core.exceptions import WeakPasswordError

        with pytest.raises(WeakPasswordError) as exc_info:
            await auth_service.register("Bob", "bob@example.com", "weakpass")

        assert exc_info.value.status_code == 400
        assert exc_info.value.reasons == [
            "Password must contain at least one uppercase letter",
            "Password must contain at least one number",
            "Password must contain at least one special character",
        ]

    @pytest.mark.asyncio
    async def test_duplicate_email_case_insensitive(self, auth_service, registered_user):
        from blog_cms.core.exceptions import DuplicateEmailError

        with pytest.raises(DuplicateEmailError) as exc_info:
            await auth_service.register("Alice Again", "ALICE@example.com", STRONG_PASSWORD)

        assert exc_info.value.status_code == 409


class TestLogin:
    @pytest.mark.asyncio
    async def test_success_creates_session_and_refresh_record(
        self, auth_service, registered_user, kv_store, redis_keys
    ):
        tokens = await _login(auth_service, user_agent="pytest", ip_address="10.0.0.1")

        access = auth_service.codec.verify_access_token(tokens.access_token)
        refresh = auth_service.codec.verify_refresh_token(tokens.refresh_token)
        assert access.sub == registered_user.id
        assert access.sid == refresh.sid == tokens.session_id

        session = await auth_service.sessions.validate(tokens.session_id)
        assert session.user_id == registered_user.id
        assert session.user_agent == "pytest"
        assert session.ip_address == "10.0.0.1"

        record = await kv_store.get_json(redis_keys.refresh_token(refresh.jti))
        assert record == {"userId": registered_user.id, "sessionId": tokens.session_id}
        assert await kv_store.ttl(redis_keys.refresh_token(refresh.jti)) == REFRESH_TTL

    @pytest.mark.asyncio
    async def test_email_is_normalized(self, auth_service, registered_user):
        tokens = await _login(auth_service, email=" ALICE@example.COM ")

        assert tokens.session_id

    @pytest.mark.asyncio
    async def test_wrong_password(self, auth_service, registered_user):
        from blog_cms.core.exceptions import InvalidCredentialsError
        from blog_cms.core.rate_limiter import RateLimitScope

        with pytest.raises(InvalidCredentialsError):
            await _login(auth_service, password="Wr0ng!Password")

        attempts = await auth_service.rate_limiter.get_attempts(RateLimitScope.LOGIN, "alice@example.com")
        assert attempts == 1

    @pytest.mark.asyncio
    async def test_unknown_email_fails_like_wrong_password(self, auth_service):
        from blog_cms.core.exceptions import InvalidCredentialsError
        from blog_cms.core.rate_limiter import RateLimitScope

        with pytest.raises(InvalidCredentialsError) as exc_info:
            await _login(auth_service, email="nobody@example.com")

        assert exc_info.value.message == "Invalid credentials"
        attempts = await auth_service.rate_limiter.get_attempts(RateLimitScope.LOGIN, "nobody@example.com")
        assert attempts == 1

    @pytest.mark.asyncio
    async def test_disabled_account(self, auth_service, registered_user, user_directory):
        from blog_cms.core.exceptions import AccountDisabledError
        from blog_cms.core.rate_limiter import RateLimitScope

        user_directory.set_status(registered_user.id, "DISABLED")

        with pytest.raises(AccountDisabledError):
            await _login(auth_service)

        attempts = await auth_service.rate_limiter.get_attempts(RateLimitScope.LOGIN, "alice@example.com")
        assert attempts == 1

    @pytest.mark.asyncio
    async def test_disabled_account_reported_before_password_check(
        self, auth_service, registered_user, user_directory
    ):
        from blog_cms.core.exceptions import AccountDisabledError

        user_directory.set_status(registered_user.id, "DISABLED")

        with pytest.raises(AccountDisabledError) as exc_info:
            await _login(auth_service, password="Wr0ng!Password")

        assert exc_info.value.message == "User account is disabled"

    @pytest.mark.asyncio
    async def test_brute_force_locked_out_until_window_passes(self, auth_service, registered_user, clock):
        """
        Five wrong passwords, then the correct one is refused; once the window
        has elapsed the correct password works and the counter is gone.
        """
        from blog_cms.core.exceptions import InvalidCredentialsError, TooManyAttemptsError
        from blog_cms.core.rate_limiter import RateLimitScope

        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                await _login(auth_service, password="Wr0ng!Password")

        with pytest.raises(TooManyAttemptsError) as exc_info:
            await _login(auth_service)
        assert exc_info.value.retry_after_minutes == 15

        clock.advance(LOGIN_WINDOW)

        tokens = await _login(auth_service)
        assert tokens.access_token
        assert await auth_service.rate_limiter.get_attempts(RateLimitScope.LOGIN, "alice@example.com") == 0

    @pytest.mark.asyncio
    async def test_success_clears_failures(self, auth_service, registered_user):
        from blog_cms.core.exceptions import InvalidCredentialsError
        from blog_cms.core.rate_limiter import RateLimitScope

        for _ in range(3):
            with pytest.raises(InvalidCredentialsError):
                await _login(auth_service, password="Wr0ng!Password")

        await _login(auth_service)

        assert await auth_service.rate_limiter.get_attempts(RateLimitScope.LOGIN, "alice@example.com") == 0


class TestRefresh:
    @pytest.mark.asyncio
    async def test_rotation_consumes_old_refresh_token(self, auth_service, registered_user, kv_store, redis_keys):
        from blog_cms.core.exceptions import InvalidRefreshTokenError

        first = await _login(auth_service)
        old = await auth_service.authenticate_refresh_token(first.refresh_token)

        second = await auth_service.refresh(old.sub, old.jti, old.sid)

        new = auth_service.codec.verify_refresh_token(second.refresh_token)
        assert second.session_id == first.session_id
        assert new.jti != old.jti
        assert await kv_store.get_json(redis_keys.refresh_token(old.jti)) is None
        assert await kv_store.get_json(redis_keys.refresh_token(new.jti)) == {
            "userId": registered_user.id,
            "sessionId": first.session_id,
        }

        with pytest.raises(InvalidRefreshTokenError):
            await auth_service.authenticate_refresh_token(first.refresh_token)

        assert (await auth_service.authenticate_refresh_token(second.refresh_token)).jti == new.jti

    @pytest.mark.asyncio
    async def test_refresh_slides_session(self, auth_service, registered_user, kv_store, redis_keys, clock):
        tokens = await _login(auth_service)
        claims = await auth_service.authenticate_refresh_token(tokens.refresh_token)

        clock.advance(3600)
        await auth_service.refresh(claims.sub, claims.jti, claims.sid)

        assert await kv_store.ttl(redis_keys.session(tokens.session_id)) == REFRESH_TTL

    @pytest.mark.asyncio
    async def test_session_of_another_user(self, auth_service, registered_user):
        from blog_cms.core.exceptions import SessionInvalidError

        tokens = await _login(auth_service)
        claims = await auth_service.authenticate_refresh_token(tokens.refresh_token)

        with pytest.raises(SessionInvalidError):
            await auth_service.refresh("someone-else", claims.jti, claims.sid)

    @pytest.mark.asyncio
    async def test_disabled_since_login(self, auth_service, registered_user, user_directory):
        from blog_cms.core.exceptions import AccountDisabledError

        tokens = await _login(auth_service)
        claims = await auth_service.authenticate_refresh_token(tokens.refresh_token)
        user_directory.set_status(registered_user.id, "DISABLED")

        with pytest.raises(AccountDisabledError):
            await auth_service.refresh(claims.sub, claims.jti, claims.sid)

    @pytest.mark.asyncio
    async def test_deleted_user(self, auth_service, registered_user, user_directory):
        from blog_cms.core.exceptions import UserNotFoundError

        tokens = await _login(auth_service)
        claims = await auth_service.authenticate_refresh_token(tokens.refresh_token)
        del user_directory.users[registered_user.id]

        with pytest.raises(UserNotFoundError):
            await auth_service.refresh(claims.sub, claims.jti, claims.sid)

    @pytest.mark.asyncio
    async def test_persistence_failure_is_logged_not_raised(self, auth_service, registered_user, kv_store):
        tokens = await _login(auth_service)
        claims = await auth_service.authenticate_refresh_token(tokens.refresh_token)
        kv_store.delete = AsyncMock(side_effect=ConnectionError("redis blip"))

        rotated = await auth_service.refresh(claims.sub, claims.jti, claims.sid)

        assert rotated.refresh_token != tokens.refresh_token


class TestLogout:
    @pytest.mark.asyncio
    async def test_logout_revokes_session_refresh_record_and_access_token(
        self, auth_service, registered_user, kv_store, redis_keys
    ):
        tokens = await _login(auth_service)
        access = auth_service.codec.verify_access_token(tokens.access_token)
        refresh = auth_service.codec.verify_refresh_token(tokens.refresh_token)

        result = await auth_service.logout(tokens.session_id, refresh.jti, tokens.access_token)

        assert result == {"success": True}
        assert await auth_service.sessions.exists(tokens.session_id) is False
        assert await kv_store.exists(redis_keys.refresh_token(refresh.jti)) is False
        assert await auth_service.denylist.is_blocked(access.jti) is True
        ttl = await kv_store.ttl(redis_keys.blocked_token(access.jti))
        assert 0 < ttl <= 15 * 60

    @pytest.mark.asyncio
    async def test_logout_is_idempotent(self, auth_service, registered_user):
        tokens = await _login(auth_service)

        assert await auth_service.logout(tokens.session_id) == {"success": True}
        assert await auth_service.logout(tokens.session_id) == {"success": True}

    @pytest.mark.asyncio
    async def test_cleanup_steps_are_independent(self, auth_service, registered_user):
        tokens = await _login(auth_service)
        access = auth_service.codec.verify_access_token(tokens.access_token)
        auth_service.sessions.delete = AsyncMock(side_effect=ConnectionError("redis blip"))

        result = await auth_service.logout(tokens.session_id, None, tokens.access_token)

        assert result == {"success": True}
        assert await auth_service.denylist.is_blocked(access.jti) is True

    @pytest.mark.asyncio
    async def test_forged_access_token_not_denylisted(self, auth_service):
        assert await auth_service.block_access_token("not.a.token") is False

    @pytest.mark.asyncio
    async def test_refresh_after_logout_fails_with_session_invalid(self, auth_service, registered_user):
        """login -> refresh -> logout -> the first refresh token is dead because its session is."""
        from blog_cms.core.exceptions import SessionInvalidError

        first = await _login(auth_service)
        claims = await auth_service.authenticate_refresh_token(first.refresh_token)
        second = await auth_service.refresh(claims.sub, claims.jti, claims.sid)
        current = auth_service.codec.verify_refresh_token(second.refresh_token)

        await auth_service.logout(second.session_id, current.jti, second.access_token)

        with pytest.raises(SessionInvalidError):
            await auth_service.authenticate_refresh_token(first.refresh_token)
        with pytest.raises(SessionInvalidError):
            await auth_service.authenticate_refresh_token(second.refresh_token)


class TestAccessPolicy:
    @pytest.mark.asyncio
    async def test_valid_token(self, auth_service, registered_user):
        tokens = await _login(auth_service)

        claims = await auth_service.authenticate_access_token(tokens.access_token)

        assert claims.sub == registered_user.id
        assert claims.email == "alice@example.com"

    @pytest.mark.asyncio
    async def test_garbage_token(self, auth_service):
        from blog_cms.core.exceptions import InvalidTokenError

        with pytest.raises(InvalidTokenError):
            await auth_service.authenticate_access_token("garbage")

    @pytest.mark.asyncio
    async def test_refresh_token_is_not_an_access_token(self, auth_service, registered_user):
        from blog_cms.core.exceptions import InvalidTokenError

        tokens = await _login(auth_service)

        with pytest.raises(InvalidTokenError):
            await auth_service.authenticate_access_token(tokens.refresh_token)

    @pytest.mark.asyncio
    async def test_denylisted_token(self, auth_service, registered_user):
        from blog_cms.core.exceptions import InvalidTokenError

        tokens = await _login(auth_service)
        await auth_service.block_access_token(tokens.access_token)

        with pytest.raises(InvalidTokenError):
            await auth_service.authenticate_access_token(tokens.access_token)

    @pytest.mark.asyncio
    async def test_revoked_session(self, auth_service, registered_user):
        from blog_cms.core.exceptions import SessionInvalidError

        tokens = await _login(auth_service)
        await auth_service.sessions.delete(tokens.session_id)

        with pytest.raises(SessionInvalidError):
            await auth_service.authenticate_access_token(tokens.access_token)

    @pytest.mark.asyncio
    async def test_disabled_user(self, auth_service, registered_user, user_directory):
        from blog_cms.core.exceptions import AccountDisabledError

        tokens = await _login(auth_service)
        user_directory.set_status(registered_user.id, "DISABLED")

        with pytest.raises(AccountDisabledError):
            await auth_service.authenticate_access_token(tokens.access_token)


class TestForgotPassword:
    @pytest.mark.asyncio
    async def test_unknown_email_sends_nothing(self, auth_service, mock_mailer):
        from blog_cms.core.rate_limiter import RateLimitScope

        result = await auth_service.forgot_password("nobody@example.com", ip_address="10.0.0.1")

        assert result == {"success": True}
        mock_mailer.send_password_reset_email.assert_not_awaited()
        assert await auth_service.rate_limiter.get_attempts(
            RateLimitScope.FORGOT_PASSWORD_EMAIL, "nobody@example.com"
        ) == 1

    @pytest.mark.asyncio
    async def test_known_email_stores_token_and_sends_link(
        self, auth_service, registered_user, mock_mailer, kv_store, redis_keys, sent_reset_token
    ):
        result = await auth_service.forgot_password("Alice@Example.com")

        assert result == {"success": True}
        mock_mailer.send_password_reset_email.assert_awaited_once()
        to_email, to_name, reset_url = mock_mailer.send_password_reset_email.await_args.args
        assert to_email == "alice@example.com"
        assert to_name == "Alice"
        assert reset_url.startswith("http://localhost:3000/reset-password/")

        token = sent_reset_token()
        assert len(token) == 64
        assert await kv_store.get(redis_keys.reset_token(token)) == registered_user.id
        assert await kv_store.ttl(redis_keys.reset_token(token)) == 30 * 60

    @pytest.mark.asyncio
    async def test_disabled_account_sends_nothing(self, auth_service, registered_user, user_directory, mock_mailer):
        user_directory.set_status(registered_user.id, "DISABLED")

        assert await auth_service.forgot_password("alice@example.com") == {"success": True}
        mock_mailer.send_password_reset_email.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_mail_failure_is_not_surfaced(self, auth_service, registered_user, mock_mailer):
        from blog_cms.core.exceptions import DeliveryError

        mock_mailer.send_password_reset_email.side_effect = DeliveryError("brevo down")

        assert await auth_service.forgot_password("alice@example.com") == {"success": True}

    @pytest.mark.asyncio
    async def test_email_rate_limit(self, auth_service, registered_user):
        from blog_cms.core.exceptions import RateLimitedError

        for _ in range(3):
            await auth_service.forgot_password("alice@example.com")

        with pytest.raises(RateLimitedError):
            await auth_service.forgot_password("alice@example.com")

    @pytest.mark.asyncio
    async def test_ip_rate_limit_spans_emails(self, auth_service):
        from blog_cms.core.exceptions import RateLimitedError

        for i in range(3):
            await auth_service.forgot_password(f"user{i}@example.com", ip_address="10.0.0.9")

        with pytest.raises(RateLimitedError):
            await auth_service.forgot_password("fresh@example.com", ip_address="10.0.0.9")


class TestResetPassword:
    @pytest.mark.asyncio
    async def test_reset_changes_password_and_revokes_every_session(
        self, auth_service, registered_user, sent_reset_token
    ):
        from blog_cms.core.exceptions import InvalidCredentialsError, SessionInvalidError

        laptop = await _login(auth_service)
        phone = await _login(auth_service)
        await auth_service.forgot_password("alice@example.com")

        result = await auth_service.reset_password(sent_reset_token(), "N3w!Passw0rd")

        assert result == {"success": True}
        for tokens in (laptop, phone):
            assert await auth_service.sessions.exists(tokens.session_id) is False
            with pytest.raises(SessionInvalidError):
                await auth_service.authenticate_access_token(tokens.access_token)
        assert await auth_service.list_sessions(registered_user.id) == []

        with pytest.raises(InvalidCredentialsError):
            await _login(auth_service)
        assert await _login(auth_service, password="N3w!Passw0rd")

    @pytest.mark.asyncio
    async def test_token_is_single_use(self, auth_service, registered_user, sent_reset_token):
        from blog_cms.core.exceptions import InvalidOrExpiredTokenError

        await auth_service.forgot_password("alice@example.com")
        token = sent_reset_token()
        await auth_service.reset_password(token, "N3w!Passw0rd")

        with pytest.raises(InvalidOrExpiredTokenError) as exc_info:
            await auth_service.reset_password(token, "An0ther!Passw0rd")

        assert exc_info.value.status_code == 400
        assert exc_info.value.message == "Invalid or expired reset token"

    @pytest.mark.asyncio
    async def test_concurrent_resets_with_one_token(self, auth_service, registered_user, sent_reset_token):
        """Two requests racing on the same token: exactly one succeeds."""
        from blog_cms.core.exceptions import InvalidOrExpiredTokenError

        await auth_service.forgot_password("alice@example.com")
        token = sent_reset_token()

        results = await asyncio.gather(
            auth_service.reset_password(token, "N3w!Passw0rdA"),
            auth_service.reset_password(token, "N3w!Passw0rdB"),
            return_exceptions=True,
        )

        assert results.count({"success": True}) == 1
        assert sum(isinstance(r, InvalidOrExpiredTokenError) for r in results) == 1

    @pytest.mark.asyncio
    async def test_token_expires(self, auth_service, registered_user, sent_reset_token, clock):
        from blog_cms.core.exceptions import InvalidOrExpiredTokenError

        await auth_service.forgot_password("alice@example.com")
        clock.advance(30 * 60)

        with pytest.raises(InvalidOrExpiredTokenError):
            await auth_service.reset_password(sent_reset_token(), "N3w!Passw0rd")

    @pytest.mark.asyncio
    async def test_weak_password_keeps_token(self, auth_service, registered_user, sent_reset_token):
        from blog_cms.core.exceptions import WeakPasswordError

        await auth_service.forgot_password("alice@example.com")
        token = sent_reset_token()

        with pytest.raises(WeakPasswordError):
            await auth_service.reset_password(token, "weak")

        assert await auth_service.reset_password(token, "N3w!Passw0rd") == {"success": True}

    @pytest.mark.asyncio
    async def test_unknown_token(self, auth_service):
        from blog_cms.core.exceptions import InvalidOrExpiredTokenError

        with pytest.raises(InvalidOrExpiredTokenError):
            await auth_service.reset_password("0" * 64, "N3w!Passw0rd")

    @pytest.mark.asyncio
    async def test_disabled_account(self, auth_service, registered_user, user_directory, sent_reset_token):
        from blog_cms.core.exceptions import InvalidOrExpiredTokenError

        await auth_service.forgot_password("alice@example.com")
        user_directory.set_status(registered_user.id, "DISABLED")

        with pytest.raises(InvalidOrExpiredTokenError):
            await auth_service.reset_password(sent_reset_token(), "N3w!Passw0rd")


class TestProfileAndSessions:
    @pytest.mark.asyncio
    async def test_get_profile(self, auth_service, registered_user):
        profile = await auth_service.get_profile(registered_user.id)

        assert profile.email == "alice@example.com"

    @pytest.mark.asyncio
    async def test_get_profile_unknown_user(self, auth_service):
        from blog_cms.core.exceptions import UserNotFoundError

        with pytest.raises(UserNotFoundError) as exc_info:
            await auth_service.get_profile("missing")

        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_list_and_revoke_sessions(self, auth_service, registered_user):
        await _login(auth_service)
        await _login(auth_service)

        assert len(await auth_service.list_sessions(registered_user.id)) == 2
        assert await auth_service.revoke_all_sessions(registered_user.id) == 2
        assert await auth_service.list_sessions(registered_user.id) == []
