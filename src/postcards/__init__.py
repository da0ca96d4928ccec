"""Festive Postcards - OTP-gated AI postcard generation service."""

__version__ = "0.3.0"

from postcards.core.config import PostcardConfig, config

__all__ = [
    "PostcardConfig",
    "config",
]
