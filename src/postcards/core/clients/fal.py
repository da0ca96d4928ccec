"""FAL AI client for composition and style transfer.

Two FAL models are used:

- ``image-apps-v2/product-holding`` places the dish into the person's hands.
  FAL may answer ``202 Accepted`` with a status URL, in which case the
  client polls until the job reaches a terminal state.
- ``flux-pro/kontext`` restyles the composed image as a festive
  illustration.

Both are authenticated with ``Authorization: Key <fal key>``.
"""

from __future__ import annotations

import logging
import time
from typing import Any

import requests

from postcards.core.clients.base import ProviderError

logger = logging.getLogger(__name__)

FAL_FILES_URL = "https://fal.run/v1/files"
PRODUCT_HOLDING_URL = "https://fal.run/fal-ai/image-apps-v2/product-holding"
FLUX_KONTEXT_URL = "https://fal.run/fal-ai/flux-pro/kontext"

_SUCCESS_STATES = {"succeeded", "success", "completed", "ready"}
_FAILURE_STATES = {"failed", "error"}


def extract_image_url(payload: Any) -> str | None:
    """Pull the first image URL out of a FAL response body.

    FAL models are not consistent about where the output lives, so this
    checks ``image``, ``image_url``, ``images[0]`` (string or ``{"url"}``),
    ``output.image`` and ``output.image_url`` in that order.

    Args:
        payload: Decoded JSON response

    Returns:
        The image URL, or None if none was found
    """
    if not isinstance(payload, dict):
        return None
    if isinstance(payload.get("image"), str):
        return payload["image"]
    if isinstance(payload.get("image_url"), str):
        return payload["image_url"]

    images = payload.get("images")
    if isinstance(images, list) and images:
        first = images[0]
        if isinstance(first, str):
            return first
        if isinstance(first, dict) and first.get("url"):
            return first["url"]

    output = payload.get("output")
    if isinstance(output, dict):
        if isinstance(output.get("image"), str):
            return output["image"]
        if isinstance(output.get("image_url"), str):
            return output["image_url"]
    return None


class FalClient:
    """Call FAL AI image models.

    Attributes:
        api_key: FAL key (``None`` when not configured)
        poll_interval: Seconds between status polls for queued jobs
        poll_timeout: Maximum seconds to wait for a queued job
    """

    def __init__(
        self,
        api_key: str | None,
        poll_interval: float = 1.5,
        poll_timeout: float = 60.0,
    ) -> None:
        self.api_key = api_key
        self.poll_interval = poll_interval
        self.poll_timeout = poll_timeout

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> dict[str, str]:
        if not self.api_key:
            raise ProviderError("fal", "FAL_KEY is not configured")
        return {"Authorization": f"Key {self.api_key}"}

    @staticmethod
    def _error_from(response: requests.Response, label: str) -> ProviderError:
        return ProviderError(
            "fal",
            f"{label} failed: {response.status_code} {response.reason} - {response.text}",
            status_code=response.status_code,
            body=response.text,
        )

    def upload_file(self, data: bytes, filename: str, timeout: float = 60.0) -> str:
        """Upload raw bytes to FAL file storage.

        Returns:
            Public URL of the stored file
        """
        logger.info(f"Uploading {filename} to FAL ({len(data)} bytes)")
        try:
            response = requests.post(
                FAL_FILES_URL,
                headers=self._headers(),
                files={"file": (filename, data)},
                timeout=timeout,
            )
        except requests.RequestException as e:
            raise ProviderError("fal", f"FAL upload failed: {e}") from e

        if not response.ok:
            raise self._error_from(response, "FAL upload")
        return response.json()["url"]

    def compose_product_holding(
        self,
        person_image_url: str,
        product_image_url: str,
        prompt: str,
        negative_prompt: str,
        seed: int,
        timeout: float = 120.0,
    ) -> dict:
        """Place the product image into the person's hands.

        Returns:
            The decoded FAL result (contains ``images``)

        Raises:
            ProviderError: On a non-2xx response, a failed or timed-out job,
                or a transport error.  ``status_code`` carries FAL's status.
        """
        payload = {
            "person_image_url": person_image_url,
            "product_image_url": product_image_url,
            "prompt": prompt,
            "negative_prompt": negative_prompt,
            "seed": seed,
            "enable_safety_checker": True,
        }
        logger.info("Calling FAL product-holding composition")
        try:
            response = requests.post(
                PRODUCT_HOLDING_URL,
                headers={**self._headers(), "Content-Type": "application/json"},
                json=payload,
                timeout=timeout,
            )
        except requests.RequestException as e:
            raise ProviderError("fal", f"FAL AI request failed: {e}") from e

        if response.status_code == 202:
            started = response.json()
            status_url = (
                started.get("response_url") or started.get("status_url") or started.get("url")
            )
            if not status_url:
                raise ProviderError("fal", "Missing response url from FAL queue")
            return self.poll_until_ready(status_url)

        if not response.ok:
            raise self._error_from(response, "FAL AI API")
        return response.json()

    def poll_until_ready(self, status_url: str) -> dict:
        """Poll a queued FAL job until it succeeds, fails or times out."""
        deadline = time.monotonic() + self.poll_timeout
        while time.monotonic() < deadline:
            try:
                response = requests.get(status_url, headers=self._headers(), timeout=30)
            except requests.RequestException as e:
                raise ProviderError("fal", f"Polling failed: {e}") from e
            if not response.ok:
                raise self._error_from(response, "Polling")

            body = response.json()
            state = str(body.get("status") or body.get("state") or body.get("task_status") or "")
            state = state.lower()
            if state in _SUCCESS_STATES:
                return body
            if state in _FAILURE_STATES:
                raise ProviderError("fal", body.get("error") or "Generation failed")
            time.sleep(self.poll_interval)

        raise ProviderError("fal", "Timeout waiting for generation")

    def transfer_style(
        self,
        image_url: str,
        prompt: str,
        negative_prompt: str,
        seed: int,
        timeout: float = 60.0,
    ) -> str:
        """Restyle an image with FLUX Kontext.

        Returns:
            URL of the restyled image
        """
        payload = {
            "prompt": prompt,
            "image_url": image_url,
            "guidance_scale": 8.0,
            "num_inference_steps": 25,
            "seed": seed,
            "negative_prompt": negative_prompt,
        }
        logger.info("Calling FLUX Kontext style transfer")
        try:
            response = requests.post(
                FLUX_KONTEXT_URL,
                headers={**self._headers(), "Content-Type": "application/json"},
                json=payload,
                timeout=timeout,
            )
        except requests.RequestException as e:
            raise ProviderError("fal", f"FLUX Kontext request failed: {e}") from e

        if not response.ok:
            raise self._error_from(response, "FLUX Kontext API")

        url = extract_image_url(response.json())
        if not url:
            raise ProviderError("fal", "FLUX Kontext did not return any images")
        return url
