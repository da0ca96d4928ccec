"""One-time password issuance and verification.

Codes are numeric, live for ``otp_ttl_minutes`` and are single use: a
successful verification deletes the stored code, as does an attempt made
after expiry.  A wrong code leaves the stored code in place so the user can
try again until it expires.
"""

from __future__ import annotations

import hmac
import logging
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timedelta

from postcards.core.database import PostcardDB, normalize_email, utcnow

logger = logging.getLogger(__name__)


class OTPError(Exception):
    """Base class for verification failures.

    The message is intended to be displayed directly to the user.
    """


class OTPNotFoundError(OTPError):
    def __init__(self) -> None:
        super().__init__("No OTP found for this email. Please request a new one.")


class OTPExpiredError(OTPError):
    def __init__(self) -> None:
        super().__init__("OTP has expired. Please request a new one.")


class OTPMismatchError(OTPError):
    def __init__(self) -> None:
        super().__init__("Invalid OTP. Please check and try again.")


def generate_otp_code(length: int = 6) -> str:
    """Generate a numeric OTP code."""
    return "".join(secrets.choice(string.digits) for _ in range(length))


@dataclass(frozen=True)
class IssuedOTP:
    email: str
    code: str
    expires_at: datetime


class OTPService:
    """Issue and verify email codes backed by :class:`PostcardDB`."""

    def __init__(self, db: PostcardDB, ttl_minutes: int = 10, length: int = 6) -> None:
        self._db = db
        self.ttl = timedelta(minutes=ttl_minutes)
        self.length = length

    def issue(self, email: str, now: datetime | None = None) -> IssuedOTP:
        """Generate and store a fresh code for *email*.

        Expired codes for every address are purged first, and any live code
        for this address is replaced.

        Args:
            email: Recipient address
            now: Override for the current time (tests)

        Returns:
            The issued code and its expiry
        """
        now = now or utcnow()
        email = normalize_email(email)
        self._db.purge_expired_otps(now)

        code = generate_otp_code(self.length)
        expires_at = now + self.ttl
        self._db.set_otp(email, code, expires_at)
        return IssuedOTP(email=email, code=code, expires_at=expires_at)

    def verify(self, email: str, code: str, now: datetime | None = None) -> None:
        """Check *code* against the stored code and consume it.

        Args:
            email: Address the code was issued to
            code: Code entered by the user
            now: Override for the current time (tests)

        Raises:
            OTPNotFoundError: No code is stored for the email
            OTPExpiredError: The stored code has expired (it is deleted)
            OTPMismatchError: The code does not match
        """
        email = normalize_email(email)
        record = self._db.get_otp(email)
        if record is None:
            raise OTPNotFoundError()

        if record.is_expired(now):
            self._db.delete_otp(email)
            logger.info(f"Expired OTP presented for {email}")
            raise OTPExpiredError()

        entered = (code or "").strip().encode("utf-8")
        if not hmac.compare_digest(record.otp.encode("utf-8"), entered):
            logger.info(f"OTP mismatch for {email}")
            raise OTPMismatchError()

        self._db.delete_otp(email)
