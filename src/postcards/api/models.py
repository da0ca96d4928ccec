"""Pydantic request models for the Festive Postcards API.

These models define the JSON schema for every endpoint that takes a body.
FastAPI uses them for request validation and OpenAPI documentation.

The browser client sends camelCase keys (``personImageUrl``), so every model
uses a camelCase alias generator while still accepting snake_case names.

Models
------
SendOTPRequest
    Payload for ``POST /api/send-otp``.
ExistingUserOTPRequest
    Payload for ``POST /api/existing-user-otp``.
VerifyOTPRequest
    Payload for ``POST /api/verify-otp``.
GenerateRequest
    Payload for ``POST /api/generate``.
GenerateVideoRequest
    Payload for ``POST /api/generate-video``.
SignatureRequest
    Payload for ``POST /api/cloudinary-signature``.
UploadVideoRequest
    JSON payload for ``POST /api/upload-video``.
"""

from __future__ import annotations

import re

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class CamelModel(BaseModel):
    """Base model accepting both camelCase and snake_case keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _check_email(value: str) -> str:
    value = value.strip().lower()
    if not EMAIL_RE.match(value):
        raise ValueError("Invalid email format")
    return value


class SendOTPRequest(CamelModel):
    """Request body for ``POST /api/send-otp``.

    Attributes:
        email: Address the code is sent to.
        name: Display name used in the email greeting.
    """

    email: str = Field(..., description="Recipient email address.")
    name: str = Field(..., min_length=1, max_length=100, description="Recipient name.")

    @field_validator("email")
    @classmethod
    def validate_email(cls, value: str) -> str:
        return _check_email(value)

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Name is required")
        return value.strip()


class ExistingUserOTPRequest(CamelModel):
    email: str = Field(..., description="Email of a registered user.")

    @field_validator("email")
    @classmethod
    def validate_email(cls, value: str) -> str:
        return _check_email(value)


class VerifyOTPRequest(CamelModel):
    """Request body for ``POST /api/verify-otp``.

    ``name`` and ``phone`` are only required when the email does not yet
    belong to a registered user.
    """

    email: str
    otp: str = Field(..., min_length=1, max_length=10)
    name: str | None = Field(default=None, max_length=100)
    phone: str | None = Field(default=None, max_length=20)
    handle: str | None = Field(default=None, max_length=50)

    @field_validator("email")
    @classmethod
    def validate_email(cls, value: str) -> str:
        return _check_email(value)


class GenerateRequest(CamelModel):
    """Request body for ``POST /api/generate``.

    Attributes:
        person_image_url: Hosted photo of the person.
        person_image_base64: ``data:`` URL of the photo, used when no URL is
            supplied.
        dish_image_url: Absolute URL or site-relative path of the dish image.
        background: Background video name (``/background/<name>.mp4``).
        greeting: Optional greeting appended to the composition prompt.
        user_email: Email recorded with the generated card.
    """

    person_image_url: str | None = Field(default=None)
    person_image_base64: str | None = Field(default=None)
    dish_image_url: str | None = Field(default=None)
    background: str | None = Field(default=None, max_length=100)
    greeting: str | None = Field(default=None, max_length=500)
    user_email: str | None = Field(default=None)


class GenerateVideoRequest(CamelModel):
    person_image_url: str | None = None
    dish_image_url: str | None = None
    background_video_url: str | None = None
    greeting: str | None = None
    width: int = Field(default=720, gt=0)
    height: int = Field(default=1280, gt=0)
    duration: float = Field(default=5, gt=0)


class SignatureRequest(CamelModel):
    """Request body for ``POST /api/cloudinary-signature``.

    A missing ``folder`` defaults to the configured videos folder.
    """

    folder: str | None = None
    public_id: str | None = None
    resource_type: str = Field(default="video")
    eager: str | None = None
    transformation: str | None = None


class UploadVideoRequest(CamelModel):
    """JSON body for ``POST /api/upload-video``.

    The browser has used three key names for the same data URL over time;
    all are accepted.
    """

    video_data: str | None = None
    video: str | None = None
    video_data_url: str | None = None
    file_name: str | None = None

    @property
    def data_url(self) -> str | None:
        return self.video_data or self.video or self.video_data_url
