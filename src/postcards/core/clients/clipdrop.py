"""Clipdrop background removal client."""

import logging

import requests

from postcards.core.clients.base import ProviderError

logger = logging.getLogger(__name__)

CLIPDROP_REMOVE_BACKGROUND_URL = "https://clipdrop-api.co/remove-background/v1"


class ClipdropClient:
    """Remove image backgrounds with the Clipdrop API."""

    def __init__(self, api_key: str | None, timeout: float = 30.0) -> None:
        self.api_key = api_key
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def remove_background(self, image: bytes, filename: str = "image.jpg") -> bytes:
        """Return a PNG of *image* with its background removed.

        Raises:
            ProviderError: If the key is missing or the API call fails
        """
        if not self.api_key:
            raise ProviderError("clipdrop", "Clipdrop API key is not configured")

        logger.info(f"Clipdrop: removing background, input size {len(image)} bytes")
        try:
            response = requests.post(
                CLIPDROP_REMOVE_BACKGROUND_URL,
                headers={"x-api-key": self.api_key},
                files={"image_file": (filename, image)},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise ProviderError("clipdrop", f"Clipdrop request failed: {e}") from e

        if not response.ok:
            raise ProviderError(
                "clipdrop",
                f"Clipdrop API failed: {response.status_code} - {response.text}",
                status_code=response.status_code,
                body=response.text,
            )

        logger.info(f"Clipdrop: background removed, result size {len(response.content)} bytes")
        return response.content
