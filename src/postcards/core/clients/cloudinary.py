"""Cloudinary media client.

Covers the parts of Cloudinary the service relies on:

- **Signed uploads** of bytes, remote URLs or data URLs (Upload API).
- **AI background removal** through the ``e_background_removal`` delivery
  transformation.
- **Resource listing** with cursor pagination (Admin API, basic auth) for the
  dashboard's generation counts.
- **Search** with filter expressions (Search API, basic auth).
- **Browser upload signatures**, so the frontend can upload videos straight to
  Cloudinary without proxying the bytes.

Signature Rules
---------------
Cloudinary signs the request parameters sorted by key as ``k=v`` pairs joined
with ``&``, followed immediately by the API secret, hashed with SHA-1.  The
``file``, ``api_key``, ``resource_type`` and ``cloud_name`` parameters and
empty values are never part of the signature.
"""

from __future__ import annotations

import hashlib
import logging
import time
from collections.abc import Iterator
from typing import Any

import requests

from postcards.core.clients.base import ProviderError

logger = logging.getLogger(__name__)

API_BASE_URL = "https://api.cloudinary.com/v1_1"
DELIVERY_BASE_URL = "https://res.cloudinary.com"

_UNSIGNED_KEYS = {"file", "api_key", "resource_type", "cloud_name"}


def sign_params(params: dict[str, Any], api_secret: str) -> str:
    """Compute the Cloudinary request signature.

    Args:
        params: Request parameters (unsigned keys are ignored)
        api_secret: Account API secret

    Returns:
        Hex SHA-1 signature
    """
    pairs = [
        f"{key}={params[key]}"
        for key in sorted(params)
        if key not in _UNSIGNED_KEYS and params[key] not in (None, "")
    ]
    to_sign = "&".join(pairs) + api_secret
    return hashlib.sha1(to_sign.encode("utf-8")).hexdigest()


def format_context(context: dict[str, str]) -> str:
    """Encode context metadata as ``key=value|key=value``.

    ``=`` and ``|`` inside values are backslash-escaped.
    """
    pairs = []
    for key, value in context.items():
        value = str(value).replace("=", "\\=").replace("|", "\\|")
        pairs.append(f"{key}={value}")
    return "|".join(pairs)


def build_search_expression(
    *,
    prefix: str | None = None,
    tags: list[str] | None = None,
    start_date: str | None = None,
    end_date: str | None = None,
    dish_name: str | None = None,
    background: str | None = None,
    min_size: int | None = None,
    max_size: int | None = None,
    fmt: str | None = None,
) -> str:
    """Compose a Search API expression from optional filters.

    Every expression is restricted to images; each supplied filter is
    AND-ed on.  Dish and background are matched against the custom context
    stored at upload time.
    """
    expressions = ["resource_type:image"]

    if prefix:
        expressions.append(f"public_id:{prefix}*")
    if tags:
        expressions.append("(" + " AND ".join(f"tags:{tag}" for tag in tags) + ")")
    if start_date:
        expressions.append(f"created_at>={start_date}")
    if end_date:
        expressions.append(f"created_at<={end_date}")
    if dish_name:
        expressions.append(f"context.dishName:{dish_name}")
    if background:
        expressions.append(f"context.background:{background}")
    if min_size:
        expressions.append(f"bytes>={min_size}")
    if max_size:
        expressions.append(f"bytes<={max_size}")
    if fmt:
        expressions.append(f"format:{fmt}")

    return " AND ".join(expressions)


class CloudinaryClient:
    """Signed access to one Cloudinary account."""

    def __init__(
        self,
        cloud_name: str | None,
        api_key: str | None,
        api_secret: str | None,
        upload_preset: str = "ml_default",
        timeout: float = 60.0,
    ) -> None:
        self.cloud_name = cloud_name
        self.api_key = api_key
        self.api_secret = api_secret
        self.upload_preset = upload_preset
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.cloud_name and self.api_key and self.api_secret)

    def _require_config(self) -> None:
        if not self.configured:
            raise ProviderError("cloudinary", "Cloudinary credentials not configured")

    def _api_url(self, path: str) -> str:
        return f"{API_BASE_URL}/{self.cloud_name}/{path}"

    @staticmethod
    def _error_from(response: requests.Response, label: str) -> ProviderError:
        message = response.text
        try:
            message = response.json().get("error", {}).get("message") or message
        except (ValueError, AttributeError):
            pass
        return ProviderError(
            "cloudinary",
            f"{label} failed: {response.status_code} - {message}",
            status_code=response.status_code,
            body=response.text,
        )

    # -- Signing --------------------------------------------------------------

    def sign(self, params: dict[str, Any]) -> str:
        self._require_config()
        return sign_params(params, self.api_secret)

    def upload_signature(
        self,
        folder: str | None = None,
        public_id: str | None = None,
        resource_type: str = "image",
        eager: str | None = None,
        transformation: str | None = None,
        timestamp: int | None = None,
    ) -> dict:
        """Build the parameters a browser needs for a direct signed upload.

        Returns:
            Dictionary with ``cloudName``, ``apiKey``, ``timestamp``,
            ``signature`` and the signed options echoed back
        """
        self._require_config()
        timestamp = timestamp or int(time.time())
        eager = eager.strip() if isinstance(eager, str) and eager.strip() else None
        transformation = (
            transformation.strip()
            if isinstance(transformation, str) and transformation.strip()
            else None
        )

        params: dict[str, Any] = {"timestamp": timestamp}
        if folder:
            params["folder"] = folder
        if public_id:
            params["public_id"] = public_id
        if eager:
            params["eager"] = eager
        if transformation:
            params["transformation"] = transformation

        return {
            "cloudName": self.cloud_name,
            "apiKey": self.api_key,
            "timestamp": timestamp,
            "signature": self.sign(params),
            "folder": folder,
            "publicId": public_id,
            "resourceType": resource_type,
            "eager": eager,
            "transformation": transformation,
        }

    def public_config(self) -> dict:
        """Return the configuration the frontend may see."""
        return {
            "cloudName": self.cloud_name,
            "uploadPreset": self.upload_preset or "ml_default",
            "apiKey": self.api_key,
            "hasApiKey": bool(self.api_key),
            "hasApiSecret": bool(self.api_secret),
        }

    # -- Upload API -----------------------------------------------------------

    def upload(
        self,
        file: bytes | str,
        folder: str | None = None,
        resource_type: str = "image",
        public_id: str | None = None,
        fmt: str | None = None,
        context: dict[str, str] | None = None,
        tags: list[str] | None = None,
        filename: str = "image.png",
        timeout: float | None = None,
    ) -> dict:
        """Upload a file with a signed request.

        Args:
            file: Raw bytes, an http(s) URL or a ``data:`` URL
            folder: Destination folder
            resource_type: ``image``, ``video`` or ``raw``
            public_id: Explicit public id (Cloudinary picks one when omitted)
            fmt: Convert to this format on upload
            context: Custom metadata stored with the asset
            tags: Tags attached to the asset
            filename: Multipart filename used when *file* is bytes
            timeout: Override the client timeout

        Returns:
            Cloudinary's upload response (``secure_url``, ``public_id``, ...)
        """
        self._require_config()
        params: dict[str, Any] = {"timestamp": int(time.time())}
        if folder:
            params["folder"] = folder
        if public_id:
            params["public_id"] = public_id
        if fmt:
            params["format"] = fmt
        if context:
            params["context"] = format_context(context)
        if tags:
            params["tags"] = ",".join(tags)

        data = {**params, "api_key": self.api_key, "signature": self.sign(params)}
        files = None
        if isinstance(file, bytes):
            files = {"file": (filename, file)}
        else:
            data["file"] = file

        logger.info(f"Uploading {resource_type} to Cloudinary folder {folder or '/'}")
        try:
            response = requests.post(
                self._api_url(f"{resource_type}/upload"),
                data=data,
                files=files,
                timeout=timeout or self.timeout,
            )
        except requests.RequestException as e:
            raise ProviderError("cloudinary", f"Cloudinary upload failed: {e}") from e

        if not response.ok:
            raise self._error_from(response, "Cloudinary upload")

        result = response.json()
        logger.info(f"Cloudinary upload successful: {result.get('secure_url')}")
        return result

    # -- Background removal ---------------------------------------------------

    def background_removed_url(self, public_id: str) -> str:
        return f"{DELIVERY_BASE_URL}/{self.cloud_name}/image/upload/e_background_removal/{public_id}.png"

    def video_mp4_url(self, public_id: str, version: int | None = None) -> str:
        """Delivery URL that transcodes an uploaded video to best-quality MP4."""
        version_segment = f"/v{version}" if version else ""
        return (
            f"{DELIVERY_BASE_URL}/{self.cloud_name}/video/upload/f_mp4,q_auto:best"
            f"{version_segment}/{public_id}.mp4"
        )

    def remove_background(
        self,
        image_url: str,
        folder: str,
        timeout: float = 30.0,
        context: dict[str, str] | None = None,
    ) -> str:
        """Upload an image and return its background-removed delivery URL.

        The transformation URL is fetched once to confirm Cloudinary can
        serve it; the add-on may be disabled on the account.

        Raises:
            ProviderError: If the upload fails or the transformation is unavailable
        """
        uploaded = self.upload(
            image_url, folder=folder, fmt="png", context=context, timeout=timeout
        )
        transformed = self.background_removed_url(uploaded["public_id"])

        try:
            probe = requests.get(transformed, timeout=timeout)
        except requests.RequestException as e:
            raise ProviderError("cloudinary", f"Background removal probe failed: {e}") from e

        if not probe.ok:
            raise ProviderError(
                "cloudinary",
                f"Background removal transformation unavailable: {probe.status_code}",
                status_code=probe.status_code,
            )
        return transformed

    # -- Admin API ------------------------------------------------------------

    def list_resources(
        self,
        prefix: str | None = None,
        resource_type: str = "image",
        delivery_type: str = "upload",
        max_results: int = 500,
        next_cursor: str | None = None,
    ) -> dict:
        """Return one page of resources from the Admin API."""
        self._require_config()
        params: dict[str, Any] = {"max_results": max_results}
        if prefix:
            params["prefix"] = prefix
        if next_cursor:
            params["next_cursor"] = next_cursor

        try:
            response = requests.get(
                self._api_url(f"resources/{resource_type}/{delivery_type}"),
                params=params,
                auth=(self.api_key, self.api_secret),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise ProviderError("cloudinary", f"Cloudinary listing failed: {e}") from e

        if not response.ok:
            raise self._error_from(response, "Cloudinary listing")
        return response.json()

    def iter_resources(
        self,
        prefix: str | None = None,
        resource_type: str = "image",
        delivery_type: str = "upload",
        limit: int = 6000,
        page_size: int = 500,
    ) -> Iterator[dict]:
        """Yield resources across pages, stopping after *limit* items."""
        fetched = 0
        cursor = None
        while True:
            page = self.list_resources(
                prefix=prefix,
                resource_type=resource_type,
                delivery_type=delivery_type,
                max_results=page_size,
                next_cursor=cursor,
            )
            for resource in page.get("resources", []):
                yield resource
                fetched += 1
                if fetched >= limit:
                    return
            cursor = page.get("next_cursor")
            if not cursor:
                return

    # -- Search API -----------------------------------------------------------

    def search(
        self,
        expression: str,
        max_results: int = 50,
        next_cursor: str | None = None,
        sort_by: list[dict[str, str]] | None = None,
        with_field: list[str] | None = None,
    ) -> dict:
        """Run a Search API query."""
        self._require_config()
        body: dict[str, Any] = {
            "expression": expression,
            "max_results": max_results,
            "sort_by": sort_by or [{"created_at": "desc"}],
            "with_field": with_field or ["context", "tags"],
        }
        if next_cursor:
            body["next_cursor"] = next_cursor

        try:
            response = requests.post(
                self._api_url("resources/search"),
                json=body,
                auth=(self.api_key, self.api_secret),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise ProviderError("cloudinary", f"Cloudinary search failed: {e}") from e

        if not response.ok:
            raise self._error_from(response, "Cloudinary Search API")
        return response.json()
