"""Shared pytest fixtures for Festive Postcards tests."""

import io
import shutil
import tempfile
from pathlib import Path
from typing import Generator
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from postcards.core.clients import ClipdropClient, CloudinaryClient, FalClient
from postcards.core.config import PostcardConfig
from postcards.core.database import PostcardDB
from postcards.core.mailer import BrevoMailer
from postcards.core.otp import OTPService
from postcards.core.pipeline import PostcardPipeline


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files.

    Yields:
        Path to temporary directory

    Cleanup:
        Directory is removed after test completes
    """
    temp_path = Path(tempfile.mkdtemp())
    try:
        yield temp_path
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path) -> PostcardConfig:
    """Create a test configuration with every provider "configured".

    Provider calls are mocked in tests, so the credentials are placeholders.
    The person cut-out stage is off by default to keep pipeline tests
    focused; tests that cover it turn it back on.

    Args:
        temp_dir: Temporary directory from fixture

    Returns:
        PostcardConfig instance for testing
    """
    return PostcardConfig(
        _env_file=None,
        environment="development",
        database_path=temp_dir / "postcards.db",
        public_base_url="https://postcards.test",
        fal_key="test-fal-key",
        clipdrop_api_key="test-clipdrop-key",
        cloudinary_cloud_name="demo-cloud",
        cloudinary_api_key="123456",
        cloudinary_api_secret="cloud-secret",
        brevo_api_key="test-brevo-key",
        admin_api_key=None,
        remove_person_background=False,
    )


@pytest.fixture
def db(test_config: PostcardConfig) -> PostcardDB:
    return PostcardDB(test_config.database_path)


@pytest.fixture
def otp_service(db: PostcardDB) -> OTPService:
    return OTPService(db, ttl_minutes=10)


@pytest.fixture
def mock_fal() -> MagicMock:
    fal = MagicMock(spec=FalClient)
    fal.configured = True
    fal.compose_product_holding.return_value = {
        "images": [{"url": "https://fal.test/composed.png"}],
        "seed": 42,
    }
    fal.transfer_style.return_value = "https://fal.test/styled.png"
    return fal


@pytest.fixture
def mock_clipdrop() -> MagicMock:
    clipdrop = MagicMock(spec=ClipdropClient)
    clipdrop.configured = True
    clipdrop.remove_background.return_value = b"\x89PNG cutout"
    return clipdrop


@pytest.fixture
def mock_cloudinary() -> MagicMock:
    cloudinary = MagicMock(spec=CloudinaryClient)
    cloudinary.configured = True
    cloudinary.cloud_name = "demo-cloud"
    cloudinary.upload.return_value = {
        "secure_url": "https://res.cloudinary.com/demo-cloud/image/upload/v1/festive-postcards/uploads/abc.jpg",
        "public_id": "festive-postcards/uploads/abc",
        "version": 1,
    }
    cloudinary.remove_background.return_value = (
        "https://res.cloudinary.com/demo-cloud/image/upload/e_background_removal/"
        "festive-postcards/background-removed/xyz.png"
    )
    return cloudinary


@pytest.fixture
def mock_mailer() -> MagicMock:
    mailer = MagicMock(spec=BrevoMailer)
    mailer.send_otp.return_value = "<message-id@brevo>"
    return mailer


@pytest.fixture
def pipeline(test_config, db, mock_fal, mock_clipdrop, mock_cloudinary) -> PostcardPipeline:
    return PostcardPipeline(test_config, db, mock_fal, mock_clipdrop, mock_cloudinary)


@pytest.fixture
def png_bytes() -> bytes:
    """A real PNG large enough to pass the minimum size check."""
    image = Image.effect_noise((64, 64), 64).convert("RGB")
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def test_client(
    monkeypatch,
    test_config,
    db,
    mock_fal,
    mock_clipdrop,
    mock_cloudinary,
    mock_mailer,
) -> Generator[TestClient, None, None]:
    """FastAPI TestClient with the provider clients replaced by mocks.

    The lifespan runs against ``test_config``; the services it builds are
    then swapped on ``app.state`` for the mocked ones.
    """
    from postcards.api import main as api_main

    monkeypatch.setattr(api_main, "config", test_config)

    with TestClient(api_main.app) as client:
        state = api_main.app.state
        state.config = test_config
        state.db = db
        state.otp = OTPService(db, ttl_minutes=test_config.otp_ttl_minutes)
        state.mailer = mock_mailer
        state.fal = mock_fal
        state.clipdrop = mock_clipdrop
        state.cloudinary = mock_cloudinary
        state.pipeline = PostcardPipeline(
            test_config, db, mock_fal, mock_clipdrop, mock_cloudinary
        )
        yield client
