"""
Typed failures raised by the authentication core.

Services raise these; the FastAPI exception handler in `blog_cms.main`
turns them into JSON responses using `status_code`. Messages for anything
enumeration-sensitive are deliberately generic.
"""

from typing import List, Optional


class AuthError(Exception):
    """Base class for every business-rule failure in the auth core."""

    status_code: int = 400
    default_message: str = "Authentication error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(AuthError):
    status_code = 400
    default_message = "Invalid input"


class WeakPasswordError(ValidationError):
    """Carries every unmet password rule, not just the first one."""

    def __init__(self, reasons: List[str]):
        self.reasons = list(reasons)
        super().__init__(", ".join(self.reasons))


class DuplicateEmailError(AuthError):
    status_code = 409
    default_message = "User with this email already exists"


class InvalidCredentialsError(AuthError):
    status_code = 401
    default_message = "Invalid credentials"


class InvalidTokenError(AuthError):
    status_code = 401
    default_message = "Invalid or expired token"


class InvalidRefreshTokenError(InvalidTokenError):
    default_message = "Invalid or expired refresh token"


class InvalidOrExpiredTokenError(InvalidTokenError):
    """Password-reset token that is unknown, used, or whose account is no longer active."""

    status_code = 400
    default_message = "Invalid or expired reset token"


class AccountDisabledError(AuthError):
    status_code = 401
    default_message = "User account is disabled"


class RateLimitedError(AuthError):
    status_code = 401
    default_message = "Too many attempts"

    def __init__(self, retry_after_minutes: int, message: Optional[str] = None):
        self.retry_after_minutes = retry_after_minutes
        super().__init__(
            message or f"Too many attempts. Please try again in {retry_after_minutes} minutes."
        )


TooManyAttemptsError = RateLimitedError


class SessionInvalidError(AuthError):
    status_code = 401
    default_message = "Session no longer valid"


class UserNotFoundError(AuthError):
    status_code = 404
    default_message = "User not found"


class DeliveryError(Exception):
    """Outbound mail could not be handed to the provider. Never surfaced to API callers."""
