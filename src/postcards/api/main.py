"""Festive Postcards — FastAPI Application.

This module is the single entry point for the web service.  It defines the
FastAPI ``app`` instance, all REST API routes, the error handlers, and the
``main()`` CLI function that launches the uvicorn server.

Architecture
------------
Route handlers are thin.  Everything with behaviour lives in
:mod:`postcards.core`:

- **Persistence** is a single SQLite file managed by
  :class:`~postcards.core.database.PostcardDB`.
- **OTP codes** are issued and checked by
  :class:`~postcards.core.otp.OTPService` and mailed through Brevo.
- **Generation** is delegated to
  :class:`~postcards.core.pipeline.PostcardPipeline`, which relays the photo
  through FAL, Clipdrop and Cloudinary.
- **Dashboard counts** come from :mod:`postcards.core.stats`.

The services are built once in the lifespan and stored on ``app.state``.
Handlers that make outbound HTTP calls are plain ``def`` functions, so
FastAPI runs them in its threadpool.

Every error response has the shape ``{"error": <message>}``.

Endpoints
---------
========  ===============================  ==================================
Method    Path                             Purpose
========  ===============================  ==================================
GET       ``/api/ping``                    Liveness
POST      ``/api/send-otp``                Issue and email a code
POST      ``/api/existing-user-otp``       Code for a registered user
POST      ``/api/verify-otp``              Verify a code, save the user
POST      ``/api/upload``                  Upload a person photo
POST      ``/api/generate``                Generate a postcard
POST      ``/api/generate-video``          Echo video composition inputs
POST      ``/api/upload-video``            Upload a rendered video
GET       ``/api/cloudinary-config``       Public Cloudinary settings
POST      ``/api/cloudinary-signature``    Signed direct-upload parameters
GET       ``/api/cloudinary-search``       Asset search with analytics (admin)
GET       ``/api/cloudinary-count``        Cloudinary generation counts (admin)
GET       ``/api/users``                   Registered users (admin)
GET       ``/api/generated-cards-count``   Database generation counts (admin)
GET       ``/api/dashboard/summary``       Combined dashboard data (admin)
========  ===============================  ==================================

Usage
-----
CLI (installed entry point)::

    postcards

Direct invocation::

    python -m postcards.api.main
"""

from __future__ import annotations

import logging
import secrets
import sqlite3
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import Depends, FastAPI, File, HTTPException, Query, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from postcards import __version__
from postcards.api.models import (
    ExistingUserOTPRequest,
    GenerateRequest,
    GenerateVideoRequest,
    SendOTPRequest,
    SignatureRequest,
    UploadVideoRequest,
    VerifyOTPRequest,
)
from postcards.api.security import require_admin
from postcards.core import stats
from postcards.core.clients import ClipdropClient, CloudinaryClient, FalClient, ProviderError
from postcards.core.clients.cloudinary import build_search_expression
from postcards.core.config import config
from postcards.core.database import PostcardDB
from postcards.core.images import (
    ImageValidationError,
    decode_data_url,
    validate_image_bytes,
)
from postcards.core.mailer import BrevoMailer, MailerError
from postcards.core.otp import OTPError, OTPService
from postcards.core.pipeline import (
    ConfigurationError,
    ContentPolicyError,
    PostcardPipeline,
    PostcardRequest,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Application lifecycle: service construction.
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the services and store them on ``app.state``.

    Missing provider credentials do not prevent startup; the affected
    endpoints report the problem when called.

    Args:
        app: The FastAPI application instance.

    Yields:
        Control back to the application for the duration of its lifetime.
    """
    app.state.config = config
    app.state.db = PostcardDB(config.database_path)
    app.state.otp = OTPService(
        app.state.db, ttl_minutes=config.otp_ttl_minutes, length=config.otp_length
    )
    app.state.mailer = BrevoMailer(
        config.brevo_api_key, config.brevo_sender_email, config.brevo_sender_name
    )
    app.state.fal = FalClient(
        config.fal_key,
        poll_interval=config.fal_poll_interval,
        poll_timeout=config.fal_poll_timeout,
    )
    app.state.clipdrop = ClipdropClient(config.clipdrop_api_key, timeout=config.background_timeout)
    app.state.cloudinary = CloudinaryClient(
        config.cloudinary_cloud_name,
        config.cloudinary_api_key,
        config.cloudinary_api_secret,
        upload_preset=config.cloudinary_upload_preset,
    )
    app.state.pipeline = PostcardPipeline(
        config, app.state.db, app.state.fal, app.state.clipdrop, app.state.cloudinary
    )

    logger.info(
        f"Services initialised (environment={config.environment}, "
        f"cloudinary={'yes' if config.cloudinary_configured else 'no'}, "
        f"fal={'yes' if config.fal_key else 'no'})"
    )

    yield  # Application runs here.

    logger.info("Festive Postcards shutting down.")


# ---------------------------------------------------------------------------
# FastAPI application instance.
# ---------------------------------------------------------------------------
app = FastAPI(
    title="Festive Postcards",
    description="OTP-gated AI postcard generation with an admin dashboard.",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Error handlers.  Every error body is ``{"error": ...}``.
# ---------------------------------------------------------------------------


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ())[1:]) or "request"
    message = f"{field}: {first.get('msg', 'Invalid request')}"
    return JSONResponse(
        status_code=400,
        content={"error": message, "details": jsonable_errors(errors)},
    )


@app.exception_handler(OTPError)
async def otp_exception_handler(request: Request, exc: OTPError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": str(exc)})


@app.exception_handler(ImageValidationError)
async def image_exception_handler(request: Request, exc: ImageValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": str(exc)})


@app.exception_handler(ContentPolicyError)
async def content_policy_handler(request: Request, exc: ContentPolicyError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={"error": str(exc), "type": "content_policy_violation"},
    )


@app.exception_handler(ConfigurationError)
async def configuration_exception_handler(request: Request, exc: ConfigurationError) -> JSONResponse:
    logger.error(f"Configuration error on {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"error": str(exc)})


@app.exception_handler(ProviderError)
async def provider_exception_handler(request: Request, exc: ProviderError) -> JSONResponse:
    logger.error(f"{exc.provider} error on {request.url.path}: {exc}")
    if exc.provider == "fal" and exc.status_code == 403:
        return JSONResponse(
            status_code=502,
            content={
                "error": "Image generation service refused the request (403). "
                "Please check the FAL key, account access or quota."
            },
        )
    return JSONResponse(status_code=500, content={"error": str(exc), "type": exc.provider})


def jsonable_errors(errors: list[dict]) -> list[dict]:
    """Keep the JSON-safe parts of pydantic's error list."""
    return [{"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")} for err in errors]


# ---------------------------------------------------------------------------
# Health.
# ---------------------------------------------------------------------------


@app.get("/api/ping")
async def ping() -> dict:
    return {"message": "ping", "version": __version__}


# ---------------------------------------------------------------------------
# Registration: OTP issuance and verification.
# ---------------------------------------------------------------------------


def _send_code(email: str, name: str, returning: bool) -> dict:
    """Issue a code, mail it, and build the response body.

    Email failures are logged and do not fail the request.  In development
    the code is returned in the response and logged.
    """
    cfg = app.state.config
    issued = app.state.otp.issue(email)

    try:
        app.state.mailer.send_otp(
            issued.email, name, issued.code, cfg.otp_ttl_minutes, returning=returning
        )
    except MailerError as e:
        logger.error(f"Failed to email OTP to {issued.email}: {e}")
        if cfg.is_development:
            logger.warning(f"Development OTP for {issued.email}: {issued.code}")

    body = {
        "success": True,
        "message": "OTP sent successfully to existing user" if returning else "OTP sent successfully",
    }
    if cfg.is_development:
        body["otp"] = issued.code
    return body


@app.post("/api/send-otp")
def send_otp(req: SendOTPRequest) -> dict:
    """Issue a verification code to a new or returning address.

    Args:
        req: Validated :class:`SendOTPRequest` payload.

    Returns:
        ``{"success": True, "message": ...}``, plus ``otp`` in development.
    """
    return _send_code(req.email, req.name, returning=False)


@app.post("/api/existing-user-otp")
def existing_user_otp(req: ExistingUserOTPRequest) -> dict:
    """Issue a code to an already registered user.

    Raises:
        HTTPException: 404 if no user is registered with the email.
    """
    user = app.state.db.get_user(req.email)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found. Please register first.")

    body = _send_code(user.email, user.name, returning=True)
    body["userData"] = {
        "name": user.name,
        "email": user.email,
        "phone": user.phone,
        "handle": user.handle,
    }
    return body


@app.post("/api/verify-otp")
def verify_otp(req: VerifyOTPRequest) -> dict:
    """Verify a code and create or refresh the user.

    New users must supply ``name`` and ``phone``; this is checked before the
    code is consumed so the user can resubmit.  A database failure while
    saving the user is logged and does not undo the verification.

    Returns:
        Dictionary with ``success``, ``message``, ``token`` and ``user``.

    Raises:
        HTTPException: 400 if a new user lacks name or phone.
        OTPError: (rendered as 400) if the code is missing, expired or wrong.
    """
    db: PostcardDB = app.state.db
    existing = db.get_user(req.email)
    if existing is None and not ((req.name or "").strip() and (req.phone or "").strip()):
        raise HTTPException(status_code=400, detail="Name and phone are required for new users")

    app.state.otp.verify(req.email, req.otp)

    user = None
    try:
        user, _ = db.upsert_verified_user(req.email, req.name, req.phone, req.handle)
    except (sqlite3.Error, ValueError) as e:
        logger.error(f"Database error saving verified user {req.email}: {e}")

    return {
        "success": True,
        "message": "OTP verified successfully and user data saved",
        "token": f"verified_{int(time.time() * 1000)}_{secrets.token_urlsafe(12)}",
        "user": user.to_dict() if user else None,
    }


# ---------------------------------------------------------------------------
# Uploads and generation.
# ---------------------------------------------------------------------------


@app.post("/api/upload")
def upload_image(file: UploadFile = File(...)) -> dict:
    """Validate a person photo and upload it to Cloudinary.

    Returns:
        Dictionary with ``url`` and ``public_id``.
    """
    cfg = app.state.config
    cloudinary: CloudinaryClient = app.state.cloudinary
    if not cloudinary.configured:
        raise ConfigurationError("Cloudinary configuration missing")

    # One byte past the limit is enough for the size check to reject it.
    data = file.file.read(cfg.max_image_bytes + 1)
    validate_image_bytes(data, cfg.min_image_bytes, cfg.max_image_bytes)

    uploaded = cloudinary.upload(
        data, folder=cfg.uploads_folder, filename=file.filename or "upload.jpg"
    )
    return {"success": True, "url": uploaded["secure_url"], "public_id": uploaded["public_id"]}


@app.post("/api/generate")
def generate(req: GenerateRequest) -> dict:
    """Generate a postcard.

    Runs the full provider chain; see :mod:`postcards.core.pipeline` for the
    stages and their fallbacks.

    Returns:
        The :class:`~postcards.core.pipeline.PostcardResult` as a dictionary.

    Raises:
        HTTPException: 400 if the person image or dish image is missing.
    """
    if not (req.person_image_url or req.person_image_base64) or not req.dish_image_url:
        raise HTTPException(
            status_code=400,
            detail="personImageUrl (or personImageBase64) and dishImageUrl are required",
        )

    logger.info(f"Generating postcard (background={req.background or 'default'})")
    result = app.state.pipeline.generate(
        PostcardRequest(
            dish_image_url=req.dish_image_url,
            person_image_url=req.person_image_url,
            person_image_base64=req.person_image_base64,
            background=req.background,
            greeting=req.greeting,
            user_email=req.user_email,
        )
    )
    return result.to_dict()


@app.post("/api/generate-video")
def generate_video(req: GenerateVideoRequest):
    """Validate the inputs for a video postcard.

    Video frames are composed in the browser; the server only checks and
    echoes the inputs.
    """
    if not (req.person_image_url and req.dish_image_url and req.background_video_url):
        return JSONResponse(
            status_code=400,
            content={
                "error": "personImageUrl, dishImageUrl, and backgroundVideoUrl are required",
                "received": {
                    "personImageUrl": bool(req.person_image_url),
                    "dishImageUrl": bool(req.dish_image_url),
                    "backgroundVideoUrl": bool(req.background_video_url),
                },
            },
        )

    return {
        "success": True,
        "message": "Video generation request received",
        "data": req.model_dump(by_alias=True),
    }


@app.post("/api/upload-video")
async def upload_video(request: Request) -> dict:
    """Upload a rendered postcard video to Cloudinary.

    Accepts either a JSON body carrying a ``data:`` URL (``videoData``,
    ``video`` or ``videoDataUrl``) or a raw ``application/octet-stream``
    body.

    Returns:
        Dictionary with the MP4 delivery ``secure_url``, ``public_id`` and
        the ``originalUrl`` Cloudinary returned.
    """
    cfg = app.state.config
    cloudinary: CloudinaryClient = app.state.cloudinary
    if not cloudinary.configured:
        raise ConfigurationError("Cloudinary configuration missing")

    content_type = request.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            payload = UploadVideoRequest.model_validate(await request.json())
        except (ValueError, ValidationError) as e:
            raise HTTPException(status_code=400, detail="Invalid JSON body") from e
        if not payload.data_url:
            raise HTTPException(
                status_code=400, detail="videoData (data URL) is required in JSON body"
            )
        if not payload.data_url.startswith("data:"):
            raise HTTPException(status_code=400, detail="Invalid data URL")
        try:
            _, video = decode_data_url(payload.data_url)
        except ImageValidationError as e:
            raise HTTPException(status_code=400, detail="Invalid data URL") from e
    elif "application/octet-stream" in content_type:
        video = await request.body()
        if not video:
            raise HTTPException(status_code=400, detail="Video payload was empty")
    else:
        raise HTTPException(status_code=400, detail="Video file is required")

    public_id = f"festive-postcard-{int(time.time())}"
    logger.info(f"Uploading video {public_id} ({len(video)} bytes)")
    uploaded = await run_in_threadpool(
        cloudinary.upload,
        video,
        folder=cfg.videos_folder,
        resource_type="video",
        public_id=public_id,
        filename=f"{public_id}.mp4",
        timeout=cfg.composition_timeout,
    )

    return {
        "success": True,
        "secure_url": cloudinary.video_mp4_url(uploaded["public_id"], uploaded.get("version")),
        "public_id": uploaded["public_id"],
        "originalUrl": uploaded.get("secure_url"),
    }


# ---------------------------------------------------------------------------
# Cloudinary helpers for the browser.
# ---------------------------------------------------------------------------


@app.get("/api/cloudinary-config")
async def cloudinary_config() -> dict:
    cloudinary: CloudinaryClient = app.state.cloudinary
    if not cloudinary.cloud_name:
        raise ConfigurationError("Cloudinary configuration missing")
    return cloudinary.public_config()


@app.post("/api/cloudinary-signature")
async def cloudinary_signature(req: SignatureRequest) -> dict:
    """Sign a direct browser upload.

    A missing ``folder`` defaults to the videos folder.
    """
    cloudinary: CloudinaryClient = app.state.cloudinary
    if not cloudinary.configured:
        raise ConfigurationError("Cloudinary configuration missing")

    return cloudinary.upload_signature(
        folder=req.folder or app.state.config.videos_folder,
        public_id=req.public_id,
        resource_type=req.resource_type,
        eager=req.eager,
        transformation=req.transformation,
    )


# ---------------------------------------------------------------------------
# Admin dashboard.
# ---------------------------------------------------------------------------


@app.get("/api/cloudinary-search", dependencies=[Depends(require_admin)])
def cloudinary_search(
    prefix: str | None = None,
    tags: list[str] | None = Query(default=None),
    dish_name: str | None = Query(default=None, alias="dishName"),
    background: str | None = None,
    start_date: str | None = Query(default=None, alias="startDate"),
    end_date: str | None = Query(default=None, alias="endDate"),
    fmt: str | None = Query(default=None, alias="format"),
    min_size: int | None = Query(default=None, alias="minSize"),
    max_size: int | None = Query(default=None, alias="maxSize"),
    max_results: int = Query(default=50, alias="maxResults", ge=1, le=500),
    next_cursor: str | None = Query(default=None, alias="nextCursor"),
    sort_by: str = Query(default="created_at:desc", alias="sortBy"),
) -> dict:
    """Search generated assets on Cloudinary and group the results.

    Returns:
        Dictionary with ``assets``, ``stats`` (paging info), ``analytics``
        (counts by dish, background, format and date) and the
        ``searchExpression`` that was run.
    """
    cloudinary: CloudinaryClient = app.state.cloudinary
    expression = build_search_expression(
        prefix=prefix or f"{app.state.config.cloudinary_root_folder}/",
        tags=tags,
        start_date=start_date,
        end_date=end_date,
        dish_name=dish_name,
        background=background,
        min_size=min_size,
        max_size=max_size,
        fmt=fmt,
    )
    field, _, direction = sort_by.partition(":")
    results = cloudinary.search(
        expression,
        max_results=max_results,
        next_cursor=next_cursor,
        sort_by=[{field or "created_at": direction or "desc"}],
        with_field=["context", "tags", "image_metadata"],
    )

    assets = [stats.transform_asset(asset) for asset in results.get("resources", [])]
    return {
        "success": True,
        "data": {
            "assets": assets,
            "stats": {
                "totalFound": results.get("total_count") or len(assets),
                "returned": len(assets),
                "hasMore": bool(results.get("next_cursor")),
                "nextCursor": results.get("next_cursor"),
            },
            "analytics": stats.summarize_assets(assets),
            "searchExpression": expression,
        },
    }


@app.get("/api/cloudinary-count", dependencies=[Depends(require_admin)])
def cloudinary_count() -> dict:
    cfg = app.state.config
    counts = stats.cloudinary_counts(
        app.state.cloudinary, cfg.background_removed_folder, cfg.cloudinary_count_limit
    )
    counts.pop("timestamps")
    return {
        "success": True,
        "source": "cloudinary",
        "folder": cfg.background_removed_folder,
        **counts,
        "lastUpdated": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/api/users", dependencies=[Depends(require_admin)])
def list_users() -> dict:
    users = app.state.db.list_users()
    return {"success": True, "count": len(users), "users": [user.to_dict() for user in users]}


@app.get("/api/generated-cards-count", dependencies=[Depends(require_admin)])
def generated_cards_count() -> dict:
    counts = stats.count_windows(app.state.db.card_created_timestamps())
    return {"success": True, "source": "database", **counts}


@app.get("/api/dashboard/summary", dependencies=[Depends(require_admin)])
def dashboard_summary(days: int = Query(default=30, ge=1, le=365)) -> dict:
    """Registrations, generations and per-day distributions in one call.

    Generations come from Cloudinary, falling back to the database count
    when Cloudinary is unavailable.
    """
    cfg = app.state.config
    summary = stats.dashboard_summary(
        app.state.db,
        app.state.cloudinary,
        prefix=cfg.background_removed_folder,
        limit=cfg.cloudinary_count_limit,
        days=days,
    )
    return {"success": True, **summary}


# ---------------------------------------------------------------------------
# CLI entry point.
# ---------------------------------------------------------------------------


def main() -> None:
    """Launch the uvicorn ASGI server.

    Reads host and port from :data:`~postcards.core.config.config` (which
    loads from ``POSTCARD_SERVER_HOST`` and ``POSTCARD_SERVER_PORT``
    environment variables).  Defaults to ``0.0.0.0:8080``.

    This function is registered as the ``postcards`` console script in
    ``pyproject.toml``.
    """
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    uvicorn.run(
        "postcards.api.main:app",
        host=config.server_host,
        port=config.server_port,
        reload=False,
    )


if __name__ == "__main__":
    main()
