"""Core functionality for postcard generation.

This package holds everything the HTTP layer delegates to:

- **config**: Environment-based settings (``POSTCARD_`` prefix)
- **database**: SQLite storage for users, OTP codes and generated cards
- **otp**: Code issuance and single-use verification
- **mailer**: Brevo transactional email
- **clients**: FAL, Clipdrop and Cloudinary HTTP clients
- **images**: Data-URL decoding and upload validation
- **pipeline**: The generation chain with per-stage fallbacks
- **stats**: Dashboard aggregation

Usage Example
-------------
    from postcards.core import PostcardDB, OTPService, config

    db = PostcardDB(config.database_path)
    otp = OTPService(db, ttl_minutes=config.otp_ttl_minutes)
    issued = otp.issue("someone@example.com")
"""

from postcards.core.config import PostcardConfig, config
from postcards.core.database import PostcardDB
from postcards.core.otp import OTPError, OTPService
from postcards.core.pipeline import PostcardPipeline, PostcardRequest, PostcardResult

__all__ = [
    "OTPError",
    "OTPService",
    "PostcardConfig",
    "PostcardDB",
    "PostcardPipeline",
    "PostcardRequest",
    "PostcardResult",
    "config",
]
