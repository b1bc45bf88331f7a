"""Key names for everything the auth core keeps in the key-value store."""

from enum import Enum

from blog_cms.core.config import AuthConfig


class RateLimitScope(str, Enum):
    LOGIN = "login"
    FORGOT_PASSWORD_EMAIL = "forgot_password_email"
    FORGOT_PASSWORD_IP = "forgot_password_ip"


class RedisKeys:
    """Builds namespaced keys from the configured prefixes."""

    def __init__(self, config: AuthConfig):
        self._config = config

    def session(self, session_id: str) -> str:
        return f"{self._config.session_prefix}{session_id}"

    def user_sessions(self, user_id: str) -> str:
        return f"{self._config.user_sessions_prefix}{user_id}"

    def refresh_token(self, jti: str) -> str:
        return f"{self._config.refresh_prefix}{jti}"

    def blocked_token(self, jti: str) -> str:
        return f"{self._config.blocked_prefix}{jti}"

    def reset_token(self, token: str) -> str:
        return f"{self._config.reset_prefix}{token}"

    def rate_limit(self, scope: RateLimitScope, identifier: str) -> str:
        if scope is RateLimitScope.LOGIN:
            return f"{self._config.login_prefix}{identifier}"
        if scope is RateLimitScope.FORGOT_PASSWORD_EMAIL:
            return f"{self._config.forgot_prefix}{identifier}"
        if scope is RateLimitScope.FORGOT_PASSWORD_IP:
            return f"{self._config.forgot_prefix}ip:{identifier}"
        raise ValueError(f"Unknown rate limit scope: {scope}")
