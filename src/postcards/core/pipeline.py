"""Postcard generation chain.

A postcard is produced by relaying the user's photo through a fixed series
of provider calls.  Every stage after composition is best-effort: when it
fails, the chain carries on with the previous stage's output.

Stages
------
1. **Upload**: use the supplied person URL, or decode and validate the
   base64 photo and upload it to Cloudinary (FAL file storage when
   Cloudinary is not configured).
2. **Person cut-out** (optional): remove the photo's background with
   Clipdrop and re-upload the PNG.
3. **Composition**: FAL product-holding places the dish in the person's
   hands.  This stage is the only fatal one.
4. **Style transfer**: FLUX Kontext turns the composition into a festive
   digital illustration.
5. **Background removal**: Cloudinary's ``e_background_removal``
   transformation, then Clipdrop, then the styled image as-is.  The stored
   asset carries the card's dish, background, greeting and email as
   context so the dashboard can filter on them.
6. **Persist**: record the generated card.  A database error is logged and
   the generated result is still returned.
"""

from __future__ import annotations

import logging
import random
import sqlite3
from dataclasses import asdict, dataclass, field
from pathlib import PurePosixPath
from urllib.parse import unquote, urlparse

import requests

from postcards.core.clients import ClipdropClient, CloudinaryClient, FalClient, ProviderError
from postcards.core.clients.fal import extract_image_url
from postcards.core.config import PostcardConfig
from postcards.core.database import PostcardDB
from postcards.core.images import (
    ImageValidationError,
    decode_data_url,
    extension_for,
    validate_image_bytes,
)

logger = logging.getLogger(__name__)

COMPOSITION_PROMPT = (
    "The exact same person from the uploaded image with identical pose, hands, and FACE. "
    "The person is FRONT-FACING and CENTERED in the image, holding a festive brass plate or "
    "bowl with the EXACT product image from the reference. The food item on the plate must be "
    "IDENTICAL to the reference product image: same dish, same appearance, same shape, same "
    "colour, same garnish, same texture, same size. Do not add any extra elements to the dish. "
    "Use ONLY the hands already visible in the uploaded image; do not add, move or generate "
    "hands. The face must be completely visible from the top of the head to the chin, "
    "front-facing, well-lit and centred, with no cropping. Keep the original height and aspect "
    "ratio and show the complete person. Natural lighting, Indian festive vibe, high quality, "
    "detailed, professional photography."
)

COMPOSITION_NEGATIVE_PROMPT = (
    "altered product, different dish, modified food, extra food items, additional garnishes, "
    "missing hands, one hand only, deformed hands, extra fingers, extra hands, multiple hands, "
    "extra limbs, another person, second person, other person hands, changed face, "
    "different face, altered facial features, changed identity, side profile, back view, "
    "looking away, obscured face, cropped face, head cut off, chin cut off, cropped product, "
    "cropped image, partial image, changed image dimensions, different aspect ratio, "
    "stretched image, low quality, watermark, text"
)

STYLE_PROMPT = (
    "Convert this person image to a polished digital illustration art style. Use a cartoonish "
    "character design with smooth lines, subtle gradients for shading, and a warm festive "
    "colour palette (yellows, oranges, browns). Change dress to Indian ethnic wear. Keep the "
    "same background as the input image."
)

STYLE_NEGATIVE_PROMPT = (
    "photorealistic, photograph, blurry, low quality, distorted face, extra limbs, "
    "different dish, watermark, text"
)

FESTIVE_STYLE = "digital_illustration_festive"
ORIGINAL_STYLE = "original"
DEFAULT_BACKGROUND = "default"


class ContentPolicyError(Exception):
    """The composition provider rejected the request's content."""


class ConfigurationError(Exception):
    """A provider required for generation is not configured."""


@dataclass
class PostcardRequest:
    dish_image_url: str
    person_image_url: str | None = None
    person_image_base64: str | None = None
    background: str | None = None
    greeting: str | None = None
    user_email: str | None = None


@dataclass
class PostcardResult:
    """Outcome of one generation.

    ``image_url`` is the best available output: the background-removed
    image when that stage succeeded, otherwise the styled image, otherwise
    the raw composition.
    """

    image_url: str
    original_image_url: str
    styled_image_url: str
    background_removed_image_url: str | None
    background_video: str | None
    meta: dict = field(default_factory=dict)
    background_removed: bool = False
    style_transferred: bool = False
    illustration_style: str = ORIGINAL_STYLE
    card_id: int | None = None

    def to_dict(self) -> dict:
        """Serialise for the API, including the key names older clients read."""
        data = asdict(self)
        data["flux_kontext_image_url"] = self.styled_image_url
        data["flux_kontext_transformed"] = self.style_transferred
        return data


def dish_name_from_url(url: str) -> str | None:
    """Derive a dish name from the file stem of its image URL.

    >>> dish_name_from_url("/dish/paneer-tikka.png")
    'paneer-tikka'
    """
    if not url:
        return None
    path = unquote(urlparse(url).path)
    stem = PurePosixPath(path).stem
    return stem or None


def background_video_path(background: str | None) -> str | None:
    if not background:
        return None
    return f"/background/{background}.mp4"


def card_context(request: PostcardRequest) -> dict[str, str]:
    """Cloudinary context metadata for a card's background-removed asset.

    Keys match what the dashboard search and analytics read back.
    """
    context = {
        "dishName": dish_name_from_url(request.dish_image_url),
        "background": request.background or DEFAULT_BACKGROUND,
        "greeting": (request.greeting or "").strip() or None,
        "userEmail": request.user_email.strip().lower() if request.user_email else None,
    }
    return {key: value for key, value in context.items() if value}


def _random_seed() -> int:
    return random.randint(0, 999_999)


class PostcardPipeline:
    """Run the generation chain against the configured providers.

    Args:
        config: Application configuration (folders, timeouts, toggles)
        db: Database used to record generated cards
        fal: FAL client (composition and style transfer)
        clipdrop: Clipdrop client (cut-outs and fallback background removal)
        cloudinary: Cloudinary client (hosting and primary background removal)
    """

    def __init__(
        self,
        config: PostcardConfig,
        db: PostcardDB,
        fal: FalClient,
        clipdrop: ClipdropClient,
        cloudinary: CloudinaryClient,
    ) -> None:
        self.config = config
        self.db = db
        self.fal = fal
        self.clipdrop = clipdrop
        self.cloudinary = cloudinary

    def generate(self, request: PostcardRequest) -> PostcardResult:
        """Produce a postcard for *request*.

        Raises:
            ImageValidationError: If no person image is supplied or it is invalid
            ConfigurationError: If FAL is not configured
            ContentPolicyError: If the composition provider rejects the content
            ProviderError: If composition fails for any other reason
        """
        if not request.dish_image_url or not (
            request.person_image_url or request.person_image_base64
        ):
            raise ImageValidationError(
                "personImageUrl (or personImageBase64) and dishImageUrl are required"
            )
        if not self.fal.configured:
            raise ConfigurationError(
                "FAL key missing. Set POSTCARD_FAL_KEY to call the generation model."
            )

        person_url = self._resolve_person_image(request)
        if self.config.remove_person_background:
            person_url = self._cut_out_person(person_url)

        meta = self._compose(person_url, request.dish_image_url, request.greeting)
        composed_url = extract_image_url(meta)
        if not composed_url:
            raise ProviderError("fal", "Model response did not include an image URL")

        styled_url, style_transferred = self._transfer_style(composed_url)

        removed_url = None
        if self.cloudinary.configured:
            removed_url = self._remove_background(styled_url, card_context(request))
        else:
            logger.warning("Cloudinary credentials not set, skipping background removal")

        final_url = removed_url or styled_url
        card_id = self._persist(final_url, request)

        return PostcardResult(
            image_url=final_url,
            original_image_url=composed_url,
            styled_image_url=styled_url,
            background_removed_image_url=removed_url,
            background_video=background_video_path(request.background),
            meta=meta,
            background_removed=removed_url is not None,
            style_transferred=style_transferred,
            illustration_style=FESTIVE_STYLE if style_transferred else ORIGINAL_STYLE,
            card_id=card_id,
        )

    # -- Stages ---------------------------------------------------------------

    def _resolve_person_image(self, request: PostcardRequest) -> str:
        if request.person_image_url:
            logger.info(f"Using provided person image URL: {request.person_image_url}")
            return request.person_image_url

        mime, data = decode_data_url(request.person_image_base64)
        validate_image_bytes(data, self.config.min_image_bytes, self.config.max_image_bytes)

        filename = f"person.{extension_for(mime)}"
        if not self.cloudinary.configured:
            url = self.fal.upload_file(data, filename, timeout=self.config.style_timeout)
            logger.info(f"Person image uploaded to FAL storage ({mime}, {len(data)} bytes): {url}")
            return url

        uploaded = self.cloudinary.upload(
            request.person_image_base64
            if request.person_image_base64.startswith("data:")
            else data,
            folder=self.config.uploads_folder,
            filename=filename,
        )
        logger.info(f"Person image uploaded ({mime}, {len(data)} bytes): {uploaded['secure_url']}")
        return uploaded["secure_url"]

    def _cut_out_person(self, person_url: str) -> str:
        if not (self.clipdrop.configured and self.cloudinary.configured):
            logger.info("Person cut-out skipped: Clipdrop or Cloudinary not configured")
            return person_url

        try:
            original = self._download(person_url)
            cutout = self.clipdrop.remove_background(original)
            uploaded = self.cloudinary.upload(
                cutout, folder=self.config.cutouts_folder, fmt="png", filename="cutout.png"
            )
        except ProviderError as e:
            logger.warning(f"Person cut-out failed, using uploaded photo: {e}")
            return person_url

        logger.info(f"Person cut-out ready: {uploaded['secure_url']}")
        return uploaded["secure_url"]

    def _compose(self, person_url: str, dish_url: str, greeting: str | None) -> dict:
        if dish_url.startswith("/"):
            dish_url = f"{self.config.public_base_url.rstrip('/')}{dish_url}"

        prompt = COMPOSITION_PROMPT
        if greeting and greeting.strip():
            prompt = f"{prompt} {greeting.strip()}"
        logger.info(f"Composing postcard: person={person_url} dish={dish_url}")

        try:
            return self.fal.compose_product_holding(
                person_image_url=person_url,
                product_image_url=dish_url,
                prompt=prompt,
                negative_prompt=COMPOSITION_NEGATIVE_PROMPT,
                seed=_random_seed(),
                timeout=self.config.composition_timeout,
            )
        except ProviderError as e:
            logger.error(f"FAL composition failed: {e}")
            if e.status_code == 422:
                raise ContentPolicyError(
                    "The image could not be processed because it was flagged by the "
                    "content policy. Please try a different photo."
                ) from e
            raise

    def _transfer_style(self, image_url: str) -> tuple[str, bool]:
        try:
            styled = self.fal.transfer_style(
                image_url,
                prompt=STYLE_PROMPT,
                negative_prompt=STYLE_NEGATIVE_PROMPT,
                seed=_random_seed(),
                timeout=self.config.style_timeout,
            )
        except ProviderError as e:
            logger.warning(f"Style transfer failed, using composed image: {e}")
            return image_url, False

        logger.info(f"Style transfer successful: {styled}")
        return styled, True

    def _remove_background(self, image_url: str, context: dict[str, str]) -> str | None:
        try:
            url = self.cloudinary.remove_background(
                image_url,
                folder=self.config.background_removed_folder,
                timeout=self.config.background_timeout,
                context=context,
            )
            logger.info(f"Cloudinary background removal successful: {url}")
            return url
        except ProviderError as e:
            logger.warning(f"Cloudinary background removal failed: {e}")

        if not self.clipdrop.configured:
            logger.warning("Clipdrop not configured, keeping styled image")
            return None

        try:
            removed = self.clipdrop.remove_background(self._download(image_url), "image.png")
            uploaded = self.cloudinary.upload(
                removed,
                folder=self.config.background_removed_folder,
                fmt="png",
                context=context,
                filename="background-removed.png",
            )
        except ProviderError as e:
            logger.warning(f"Clipdrop background removal failed, keeping styled image: {e}")
            return None

        logger.info(f"Clipdrop background removal successful: {uploaded['secure_url']}")
        return uploaded["secure_url"]

    def _persist(self, image_url: str, request: PostcardRequest) -> int | None:
        try:
            card = self.db.add_card(
                image_url=image_url,
                user_email=request.user_email,
                dish_name=dish_name_from_url(request.dish_image_url),
                background=request.background or DEFAULT_BACKGROUND,
                greeting=request.greeting,
            )
        except (sqlite3.Error, ValueError) as e:
            logger.error(f"Failed to save generated card: {e}")
            return None
        return card.id

    def _download(self, url: str) -> bytes:
        try:
            response = requests.get(url, timeout=self.config.background_timeout)
        except requests.RequestException as e:
            raise ProviderError("download", f"Failed to download image: {e}") from e
        if not response.ok:
            raise ProviderError(
                "download",
                f"Failed to download image: {response.status_code}",
                status_code=response.status_code,
            )
        return response.content
