import re
import secrets
from dataclasses import dataclass, field
from functools import lru_cache
from typing import List
from urllib.parse import quote

import bcrypt

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 72  # bcrypt only looks at the first 72 bytes

_LOWERCASE = re.compile(r"[a-z]")
_UPPERCASE = re.compile(r"[A-Z]")
_DIGIT = re.compile(r"\d")
_SPECIAL = re.compile(r"[^A-Za-z0-9]")


@dataclass
class PasswordValidation:
    is_valid: bool
    errors: List[str] = field(default_factory=list)


def _prepare_password(password: str) -> bytes:
    """
    Prepare password for bcrypt by encoding and truncating to 72 bytes.

    Args:
        password: Plain text password

    Returns:
        Password bytes truncated to 72 bytes (bcrypt limit)
    """
    return password.encode('utf-8')[:72]


def hash_password(password: str, salt_rounds: int = 10) -> str:
    """
    Hash a password using bcrypt.

    Args:
        password: Plain text password
        salt_rounds: bcrypt cost factor (log2 of the work rounds)

    Returns:
        Hashed password
    """
    salt = bcrypt.gensalt(rounds=salt_rounds)
    hashed = bcrypt.hashpw(_prepare_password(password), salt)
    return hashed.decode('utf-8')


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """
    Verify a plain password against a hashed password.

    Malformed hashes are treated as a mismatch rather than an error.

    Args:
        plain_password: The plain text password
        hashed_password: The hashed password from the database

    Returns:
        True if password matches, False otherwise
    """
    try:
        return bcrypt.checkpw(
            _prepare_password(plain_password),
            hashed_password.encode('utf-8')
        )
    except ValueError:
        return False


@lru_cache(maxsize=8)
def dummy_password_hash(salt_rounds: int) -> str:
    """
    A throwaway hash at the configured cost, verified when a login names an
    unknown account so the response takes as long as a real mismatch.
    """
    return hash_password(secrets.token_urlsafe(16), salt_rounds)


def validate_password_strength(password: str) -> PasswordValidation:
    """Check a candidate password against every policy rule and report all failures."""
    errors = []
    if len(password) < MIN_PASSWORD_LENGTH:
        errors.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
    if len(password) > MAX_PASSWORD_LENGTH:
        errors.append(f"Password must be at most {MAX_PASSWORD_LENGTH} characters long")
    if not _LOWERCASE.search(password):
        errors.append("Password must contain at least one lowercase letter")
    if not _UPPERCASE.search(password):
        errors.append("Password must contain at least one uppercase letter")
    if not _DIGIT.search(password):
        errors.append("Password must contain at least one number")
    if not _SPECIAL.search(password):
        errors.append("Password must contain at least one special character")

    return PasswordValidation(is_valid=not errors, errors=errors)


def generate_reset_token() -> str:
    """
    Create a single-use password reset token.

    Returns:
        64 hex characters (32 random bytes)
    """
    return secrets.token_hex(32)


def build_reset_url(app_origin: str, token: str) -> str:
    """Link to the frontend reset page for the given token."""
    return f"{app_origin.rstrip('/')}/reset-password/{quote(token, safe='')}"


def normalize_email(email: str) -> str:
    return email.strip().lower()
