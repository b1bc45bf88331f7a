"""
Signing and verification of access and refresh JWTs.

Both token kinds carry {sub, email, role, type, sid, jti, iat, exp} and are
signed with separate keys. Verification is purely cryptographic and temporal;
whether the session behind a token is still alive is decided by the caller.
"""

import logging
import math
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from jose import ExpiredSignatureError, JWTError, jwt

from blog_cms.core.config import AuthConfig

logger = logging.getLogger("blog_cms.token_codec")

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"


class TokenError(Exception):
    """Base class for token verification failures."""


class InvalidSignatureError(TokenError):
    pass


class TokenExpiredError(TokenError):
    pass


class WrongTokenTypeError(TokenError):
    pass


class MissingJtiError(TokenError):
    pass


@dataclass
class TokenClaims:
    sub: str
    email: str
    role: str
    type: str
    jti: str
    iat: int
    exp: int
    sid: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "TokenClaims":
        return cls(
            sub=str(payload.get("sub", "")),
            email=payload.get("email", ""),
            role=payload.get("role", ""),
            type=payload.get("type", ""),
            jti=payload.get("jti") or "",
            iat=int(payload.get("iat", 0)),
            exp=int(payload.get("exp", 0)),
            sid=payload.get("sid"),
        )


@dataclass
class IssuedToken:
    token: str
    jti: str
    expires_in: int


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_jti: str
    refresh_jti: str
    session_id: str


class TokenVerifier:
    """
    Verifies one kind of token: a signing key, the `type` claim it must carry,
    and whether a `jti` is mandatory.
    """

    def __init__(self, secret: str, algorithm: str, expected_type: str, require_jti: bool = False):
        self.secret = secret
        self.algorithm = algorithm
        self.expected_type = expected_type
        self.require_jti = require_jti

    def verify(self, token: str) -> TokenClaims:
        try:
            payload = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except ExpiredSignatureError as e:
            logger.debug(f"{self.expected_type} token expired")
            raise TokenExpiredError("Token has expired") from e
        except JWTError as e:
            logger.debug(f"{self.expected_type} token rejected: {e}")
            raise InvalidSignatureError("Token signature is invalid") from e

        if payload.get("type") != self.expected_type:
            logger.debug(f"Expected {self.expected_type} token, got {payload.get('type')!r}")
            raise WrongTokenTypeError(f"Expected a {self.expected_type} token")

        if self.require_jti and not payload.get("jti"):
            logger.debug(f"{self.expected_type} token has no jti")
            raise MissingJtiError("Token is missing its jti claim")

        return TokenClaims.from_payload(payload)


class TokenCodec:
    """Issues and verifies the access/refresh token pair for a session."""

    def __init__(self, config: AuthConfig, clock: Optional[Callable[[], float]] = None):
        self.config = config
        self._clock = clock or time.time
        self.access_verifier = TokenVerifier(
            config.access_secret, config.algorithm, ACCESS_TOKEN_TYPE
        )
        self.refresh_verifier = TokenVerifier(
            config.refresh_secret, config.algorithm, REFRESH_TOKEN_TYPE, require_jti=True
        )

    def _issue(self, claims: Dict[str, Any], token_type: str, secret: str, ttl_seconds: int) -> IssuedToken:
        jti = str(uuid.uuid4())
        issued_at = int(self._clock())
        payload = {
            **claims,
            "type": token_type,
            "jti": jti,
            "iat": issued_at,
            "exp": issued_at + ttl_seconds,
        }
        token = jwt.encode(payload, secret, algorithm=self.config.algorithm)
        return IssuedToken(token=token, jti=jti, expires_in=ttl_seconds)

    def issue_access_token(self, claims: Dict[str, Any]) -> IssuedToken:
        return self._issue(
            claims, ACCESS_TOKEN_TYPE, self.config.access_secret, self.config.access_ttl_seconds
        )

    def issue_refresh_token(self, claims: Dict[str, Any]) -> IssuedToken:
        return self._issue(
            claims, REFRESH_TOKEN_TYPE, self.config.refresh_secret, self.config.refresh_ttl_seconds
        )

    def issue_token_pair(self, claims: Dict[str, Any]) -> TokenPair:
        """
        Issue an access and a refresh token bound to the same session.

        Args:
            claims: Must contain sub, email, role and sid

        Returns:
            Both tokens with their jtis and the session id

        Raises:
            ValueError: If claims carry no sid
        """
        session_id = claims.get("sid")
        if not session_id:
            raise ValueError("Session ID (sid) is required in token claims")

        access = self.issue_access_token(claims)
        refresh = self.issue_refresh_token(claims)
        return TokenPair(
            access_token=access.token,
            refresh_token=refresh.token,
            access_jti=access.jti,
            refresh_jti=refresh.jti,
            session_id=session_id,
        )

    def verify_access_token(self, token: str) -> TokenClaims:
        return self.access_verifier.verify(token)

    def verify_refresh_token(self, token: str) -> TokenClaims:
        return self.refresh_verifier.verify(token)

    @staticmethod
    def decode_unsafe(token: Optional[str]) -> Optional[Dict[str, Any]]:
        """
        Read a token's claims WITHOUT checking signature or expiry.
        Only for best-effort cleanup; never for authorization.
        """
        if not token:
            return None
        try:
            return jwt.get_unverified_claims(token)
        except JWTError:
            return None

    def remaining_ttl_seconds(self, token: Optional[str]) -> int:
        """Seconds until the token's exp, rounded up; 0 when expired or unreadable."""
        payload = self.decode_unsafe(token)
        if not payload:
            return 0
        try:
            exp = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return 0
        return max(0, math.ceil(exp - self._clock()))

    @staticmethod
    def extract_token_from_header(header: Optional[str]) -> Optional[str]:
        if not header or not header.startswith("Bearer "):
            return None
        token = header[len("Bearer "):].strip()
        return token or None
