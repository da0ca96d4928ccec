"""Shared error type for the provider clients."""

from __future__ import annotations


class ProviderError(Exception):
    """A third-party service call failed.

    Attributes:
        provider: Short provider name (``"fal"``, ``"clipdrop"``, ``"cloudinary"``)
        status_code: HTTP status returned by the provider, if any
        body: Response text returned by the provider, if any
    """

    def __init__(
        self,
        provider: str,
        message: str,
        status_code: int | None = None,
        body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code
        self.body = body
