"""
Transactional mail for the auth flows.

Sends through the Brevo HTTP API. Without an API key (local development) the
message is not sent; only the fact that it would have been is logged.
"""

import html
import logging
from datetime import datetime, timezone
from typing import Optional, Protocol
from urllib.parse import urlsplit

import httpx

from blog_cms.core.exceptions import DeliveryError
from blog_cms.core.logging_config import redact_email

logger = logging.getLogger("blog_cms.mail")

BREVO_SEND_URL = "https://api.brevo.com/v3/smtp/email"
RESET_EMAIL_SUBJECT = "Reset Your Password - Blog CMS"


class MailDispatcher(Protocol):
    async def send_password_reset_email(self, to_email: str, to_name: str, reset_url: str) -> None:
        ...


def render_password_reset_email(user_name: str, reset_url: str, expires_minutes: int = 30) -> str:
    name = html.escape(user_name or "there")
    url = html.escape(reset_url, quote=True)
    year = datetime.now(timezone.utc).year
    return f"""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>Reset Your Password</title>
    <style>
        body {{ font-family: -apple-system, 'Segoe UI', Roboto, Arial, sans-serif; line-height: 1.6; color: #333;
               max-width: 600px; margin: 0 auto; padding: 20px; background-color: #f8f9fa; }}
        .container {{ background-color: #ffffff; border-radius: 8px; padding: 40px; }}
        .logo {{ font-size: 24px; font-weight: bold; color: #2563eb; text-align: center; }}
        .reset-button {{ display: inline-block; background-color: #2563eb; color: #ffffff; text-decoration: none;
                        padding: 12px 24px; border-radius: 6px; font-weight: 600; margin: 20px 0; }}
        .warning {{ background-color: #fef3c7; border: 1px solid #f59e0b; border-radius: 6px; padding: 15px;
                   color: #92400e; }}
        .code {{ background-color: #f3f4f6; border: 1px solid #d1d5db; border-radius: 4px; padding: 10px;
                font-family: 'Courier New', monospace; font-size: 12px; word-break: break-all; }}
        .footer {{ margin-top: 40px; padding-top: 20px; border-top: 1px solid #e5e7eb; font-size: 14px;
                  color: #6b7280; text-align: center; }}
    </style>
</head>
<body>
    <div class="container">
        <div class="logo">Blog CMS</div>
        <h1>Reset Your Password</h1>
        <p>Hello {name},</p>
        <p>We received a request to reset the password for your Blog CMS account. If you made this request,
        click the button below to choose a new password:</p>
        <div style="text-align: center;">
            <a href="{url}" class="reset-button">Reset Password</a>
        </div>
        <p>If the button doesn't work, copy and paste this link into your browser:</p>
        <div class="code">{url}</div>
        <div class="warning">
            <strong>Important:</strong> This link will expire in {expires_minutes} minutes. After that you will
            need to request a new reset link.
        </div>
        <p>If you didn't request a password reset, you can safely ignore this email. Your password will remain unchanged.</p>
        <div class="footer">
            <p>&copy; {year} Blog CMS. All rights reserved.</p>
        </div>
    </div>
</body>
</html>"""


class BrevoMailService:
    """
    Sends password reset mail through Brevo's transactional email API.

    Args:
        api_key: Brevo API key; None switches to log-only dev mode
        sender_email: From address
        sender_name: From display name
        reset_expires_minutes: Lifetime of the reset link, shown in the mail
        timeout: Request timeout in seconds
        client: Optional pre-built httpx.AsyncClient (tests pass one with a mock transport)
    """

    def __init__(
        self,
        api_key: Optional[str],
        sender_email: str,
        sender_name: str,
        reset_expires_minutes: int = 30,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.sender_email = sender_email
        self.sender_name = sender_name
        self.reset_expires_minutes = reset_expires_minutes
        self.timeout = timeout
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                headers={
                    "Content-Type": "application/json",
                    "Accept": "application/json",
                },
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def send_password_reset_email(self, to_email: str, to_name: str, reset_url: str) -> None:
        """
        Send the password reset link to a user.

        Raises:
            DeliveryError: If Brevo could not be reached or rejected the message
        """
        if not self.api_key:
            logger.info(
                f"BREVO_API_KEY not set, password reset email for {redact_email(to_email)} not sent "
                f"(link host: {urlsplit(reset_url).netloc})"
            )
            return

        payload = {
            "sender": {"name": self.sender_name, "email": self.sender_email},
            "to": [{"email": to_email, "name": to_name}],
            "subject": RESET_EMAIL_SUBJECT,
            "htmlContent": render_password_reset_email(to_name, reset_url, self.reset_expires_minutes),
        }

        client = await self._get_client()
        try:
            response = await client.post(BREVO_SEND_URL, json=payload, headers={"api-key": self.api_key})
        except httpx.HTTPError as e:
            logger.error(f"Failed to reach Brevo for {redact_email(to_email)}: {e}")
            raise DeliveryError("Failed to send password reset email") from e

        if response.status_code >= 400:
            logger.error(
                f"Brevo rejected password reset email for {redact_email(to_email)}: "
                f"status={response.status_code}"
            )
            raise DeliveryError("Failed to send password reset email")

        message_id = None
        try:
            message_id = response.json().get("messageId")
        except ValueError:
            pass
        logger.info(f"Password reset email sent to {redact_email(to_email)}. Message ID: {message_id}")
