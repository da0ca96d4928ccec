"""Transactional email through the Brevo HTTP API."""

import logging
from datetime import datetime
from html import escape

import requests

logger = logging.getLogger(__name__)

BREVO_SEND_URL = "https://api.brevo.com/v3/smtp/email"


class MailerError(Exception):
    """Raised when an email could not be handed to the provider."""


def render_otp_email(
    name: str, otp: str, ttl_minutes: int = 10, returning: bool = False
) -> tuple[str, str, str]:
    """Build the verification email.

    Args:
        name: Recipient display name
        otp: Verification code
        ttl_minutes: Code lifetime shown to the user
        returning: Use the "welcome back" wording for registered users

    Returns:
        Tuple of (subject, html body, plain-text body)
    """
    safe_name = escape((name or "there").strip())
    safe_otp = escape(str(otp))
    year = datetime.now().year

    if returning:
        subject = "Welcome Back - Verify your email for Festive Postcards"
        headline = "Welcome Back!"
        intro = "Welcome back! Use the code below to continue creating festive postcards."
    else:
        subject = "Verify your email for Festive Postcards"
        headline = "Festive Postcard Creator"
        intro = "Use the code below to finish registering and create your festive postcard."

    html = f"""
<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>Email Verification</title>
</head>
<body style="margin:0;padding:0;font-family:Arial,sans-serif;color:#333;">
  <table role="presentation" width="100%" cellpadding="0" cellspacing="0" style="padding:20px;">
    <tr>
      <td align="center">
        <table role="presentation" width="100%" cellpadding="0" cellspacing="0" style="max-width:600px;">
          <tr>
            <td style="background:#ea580c;color:#fff;padding:30px;text-align:center;border-radius:10px 10px 0 0;">
              <h1 style="margin:0;">{headline}</h1>
            </td>
          </tr>
          <tr>
            <td style="background:#f8fafc;padding:30px;border-radius:0 0 10px 10px;">
              <h2>Hi {safe_name}!</h2>
              <p>{intro}</p>
              <div style="background:#fff;border:2px solid #f97316;border-radius:8px;padding:20px;text-align:center;font-size:32px;font-weight:bold;color:#f97316;letter-spacing:5px;">
                {safe_otp}
              </div>
              <p>This code expires in {ttl_minutes} minutes. If you did not request it, ignore this email.</p>
            </td>
          </tr>
          <tr>
            <td style="padding:14px;text-align:center;color:#666;font-size:12px;">
              &copy; {year} Festive Postcards. This is an automated message, please do not reply.
            </td>
          </tr>
        </table>
      </td>
    </tr>
  </table>
</body>
</html>
"""

    text = (
        f"Hi {(name or 'there').strip()},\n\n"
        f"Your verification code is: {otp}\n\n"
        f"This code will expire in {ttl_minutes} minutes.\n\n"
        "If you didn't request this, please ignore this email.\n\n"
        "Festive Postcards Team\n"
    )
    return subject, html, text


class BrevoMailer:
    """Send transactional email with Brevo."""

    def __init__(
        self,
        api_key: str | None,
        sender_email: str,
        sender_name: str,
        timeout: float = 10.0,
    ) -> None:
        self.api_key = api_key
        self.sender_email = sender_email
        self.sender_name = sender_name
        self.timeout = timeout

    def send(self, to_email: str, to_name: str, subject: str, html: str, text: str) -> str | None:
        """Send one email.

        Returns:
            The provider message id, when the provider returns one

        Raises:
            MailerError: If no API key is configured or the provider rejects the request
        """
        if not self.api_key:
            raise MailerError("Brevo API key is not configured")

        payload = {
            "sender": {"name": self.sender_name, "email": self.sender_email},
            "to": [{"email": to_email, "name": to_name or to_email}],
            "subject": subject,
            "htmlContent": html,
            "textContent": text,
        }

        try:
            response = requests.post(
                BREVO_SEND_URL,
                json=payload,
                headers={
                    "api-key": self.api_key,
                    "accept": "application/json",
                    "content-type": "application/json",
                },
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise MailerError(f"Brevo request failed: {e}") from e

        if response.status_code >= 400:
            raise MailerError(f"Brevo rejected the email: {response.status_code} - {response.text}")

        try:
            message_id = response.json().get("messageId")
        except ValueError:
            message_id = None

        logger.info(f"Email sent to {to_email}. Message ID: {message_id or 'N/A'}")
        return message_id

    def send_otp(
        self, to_email: str, name: str, otp: str, ttl_minutes: int, returning: bool = False
    ) -> str | None:
        subject, html, text = render_otp_email(name, otp, ttl_minutes, returning=returning)
        return self.send(to_email, name, subject, html, text)
