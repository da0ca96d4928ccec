"""Tests for postcards.core.clients.fal — FAL AI client."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from postcards.core.clients import FalClient, ProviderError
from postcards.core.clients.fal import FLUX_KONTEXT_URL, PRODUCT_HOLDING_URL, extract_image_url


def _response(status_code=200, payload=None, text=""):
    response = MagicMock()
    response.status_code = status_code
    response.ok = 200 <= status_code < 300
    response.reason = "reason"
    response.text = text
    response.json.return_value = payload or {}
    return response


class TestExtractImageUrl:
    @pytest.mark.parametrize(
        "payload",
        [
            {"image": "https://x/1.png"},
            {"image_url": "https://x/1.png"},
            {"images": ["https://x/1.png"]},
            {"images": [{"url": "https://x/1.png"}]},
            {"output": {"image": "https://x/1.png"}},
            {"output": {"image_url": "https://x/1.png"}},
        ],
    )
    def test_known_shapes(self, payload):
        assert extract_image_url(payload) == "https://x/1.png"

    def test_no_image(self):
        assert extract_image_url({"images": []}) is None
        assert extract_image_url("not a dict") is None


class TestCompose:
    @patch("requests.post")
    def test_sync_response(self, mock_post):
        mock_post.return_value = _response(200, {"images": [{"url": "https://x/c.png"}]})
        client = FalClient("key")

        result = client.compose_product_holding("https://p", "https://d", "prompt", "neg", 7)

        assert extract_image_url(result) == "https://x/c.png"
        assert mock_post.call_args.args[0] == PRODUCT_HOLDING_URL
        assert mock_post.call_args.kwargs["headers"]["Authorization"] == "Key key"
        payload = mock_post.call_args.kwargs["json"]
        assert payload["person_image_url"] == "https://p"
        assert payload["product_image_url"] == "https://d"
        assert payload["seed"] == 7

    @patch("time.sleep")
    @patch("requests.get")
    @patch("requests.post")
    def test_queued_response_is_polled(self, mock_post, mock_get, mock_sleep):
        mock_post.return_value = _response(202, {"status_url": "https://queue/1"})
        mock_get.side_effect = [
            _response(200, {"status": "IN_PROGRESS"}),
            _response(200, {"status": "COMPLETED", "images": [{"url": "https://x/q.png"}]}),
        ]
        client = FalClient("key", poll_interval=0.01, poll_timeout=5)

        result = client.compose_product_holding("https://p", "https://d", "prompt", "neg", 1)

        assert extract_image_url(result) == "https://x/q.png"
        assert mock_get.call_count == 2
        mock_sleep.assert_called_once_with(0.01)

    @patch("time.sleep")
    @patch("requests.get")
    @patch("requests.post")
    def test_failed_job_raises(self, mock_post, mock_get, mock_sleep):
        mock_post.return_value = _response(202, {"response_url": "https://queue/1"})
        mock_get.return_value = _response(200, {"status": "failed", "error": "nsfw"})

        with pytest.raises(ProviderError, match="nsfw"):
            FalClient("key").compose_product_holding("p", "d", "prompt", "neg", 1)

    @patch("requests.post")
    def test_error_status_carried(self, mock_post):
        mock_post.return_value = _response(422, text="content policy")
        with pytest.raises(ProviderError) as excinfo:
            FalClient("key").compose_product_holding("p", "d", "prompt", "neg", 1)
        assert excinfo.value.status_code == 422
        assert excinfo.value.provider == "fal"

    def test_missing_key(self):
        client = FalClient(None)
        assert client.configured is False
        with pytest.raises(ProviderError, match="not configured"):
            client.compose_product_holding("p", "d", "prompt", "neg", 1)


class TestTransferStyle:
    @patch("requests.post")
    def test_returns_first_image(self, mock_post):
        mock_post.return_value = _response(200, {"images": [{"url": "https://x/s.png"}]})
        url = FalClient("key").transfer_style("https://x/c.png", "style", "neg", 3)
        assert url == "https://x/s.png"
        assert mock_post.call_args.args[0] == FLUX_KONTEXT_URL
        assert mock_post.call_args.kwargs["json"]["image_url"] == "https://x/c.png"

    @patch("requests.post")
    def test_no_image_raises(self, mock_post):
        mock_post.return_value = _response(200, {"images": []})
        with pytest.raises(ProviderError, match="did not return"):
            FalClient("key").transfer_style("https://x/c.png", "style", "neg", 3)


class TestUploadFile:
    @patch("requests.post")
    def test_upload_returns_url(self, mock_post):
        mock_post.return_value = _response(200, {"url": "https://fal.media/f.png"})
        assert FalClient("key").upload_file(b"data", "f.png") == "https://fal.media/f.png"
        assert mock_post.call_args.kwargs["files"]["file"] == ("f.png", b"data")
