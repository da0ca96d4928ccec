"""Tests for postcards.core.clients.cloudinary.

Tests cover:
- Request signing (ordering, excluded keys, empty values).
- Signed uploads of bytes and URLs.
- Background removal through the delivery transformation.
- Admin API pagination and the Search API.
- Browser upload signatures and the public configuration.
- Search expression composition.
"""

from __future__ import annotations

import hashlib
from unittest.mock import MagicMock, patch

import pytest

from postcards.core.clients import CloudinaryClient, ProviderError
from postcards.core.clients.cloudinary import build_search_expression, format_context, sign_params


def _response(status_code=200, payload=None, text=""):
    response = MagicMock()
    response.status_code = status_code
    response.ok = 200 <= status_code < 300
    response.text = text
    response.json.return_value = payload or {}
    return response


@pytest.fixture
def client() -> CloudinaryClient:
    return CloudinaryClient("demo", "key", "secret")


class TestSigning:
    def test_sorted_pairs_followed_by_secret(self):
        expected = hashlib.sha1(b"folder=cards&timestamp=100secret").hexdigest()
        assert sign_params({"timestamp": 100, "folder": "cards"}, "secret") == expected

    def test_unsigned_and_empty_keys_excluded(self):
        params = {
            "timestamp": 100,
            "file": "data:...",
            "api_key": "key",
            "resource_type": "video",
            "cloud_name": "demo",
            "public_id": "",
            "eager": None,
        }
        expected = hashlib.sha1(b"timestamp=100secret").hexdigest()
        assert sign_params(params, "secret") == expected

    def test_sign_requires_credentials(self):
        with pytest.raises(ProviderError, match="not configured"):
            CloudinaryClient("demo", "key", None).sign({"timestamp": 1})


class TestUpload:
    @patch("requests.post")
    def test_upload_bytes(self, mock_post, client):
        mock_post.return_value = _response(200, {"secure_url": "https://res/x.png", "public_id": "f/x"})

        result = client.upload(b"png", folder="f", fmt="png", filename="x.png")

        assert result["public_id"] == "f/x"
        assert mock_post.call_args.args[0] == "https://api.cloudinary.com/v1_1/demo/image/upload"
        data = mock_post.call_args.kwargs["data"]
        assert data["folder"] == "f"
        assert data["format"] == "png"
        assert data["api_key"] == "key"
        signed = {k: v for k, v in data.items() if k not in ("api_key", "signature")}
        assert data["signature"] == sign_params(signed, "secret")
        assert mock_post.call_args.kwargs["files"] == {"file": ("x.png", b"png")}

    @patch("requests.post")
    def test_upload_url_sent_as_field(self, mock_post, client):
        mock_post.return_value = _response(200, {"secure_url": "https://res/y.mp4", "public_id": "v/y"})

        client.upload("https://example.com/video.mp4", resource_type="video", public_id="y")

        assert mock_post.call_args.args[0].endswith("/video/upload")
        assert mock_post.call_args.kwargs["data"]["file"] == "https://example.com/video.mp4"
        assert mock_post.call_args.kwargs["files"] is None

    @patch("requests.post")
    def test_context_and_tags_serialised(self, mock_post, client):
        mock_post.return_value = _response(200, {"secure_url": "u", "public_id": "p"})
        client.upload(b"x", context={"dishName": "ladoo", "background": "diya"}, tags=["a", "b"])
        data = mock_post.call_args.kwargs["data"]
        assert data["context"] == "dishName=ladoo|background=diya"
        assert data["tags"] == "a,b"

    def test_context_separators_escaped(self):
        assert format_context({"greeting": "a=b|c", "dishName": "ladoo"}) == (
            "greeting=a\\=b\\|c|dishName=ladoo"
        )

    @patch("requests.post")
    def test_upload_error_uses_provider_message(self, mock_post, client):
        mock_post.return_value = _response(400, {"error": {"message": "Invalid image file"}}, "raw")
        with pytest.raises(ProviderError, match="Invalid image file") as excinfo:
            client.upload(b"x")
        assert excinfo.value.status_code == 400


class TestBackgroundRemoval:
    def test_delivery_url(self, client):
        assert client.background_removed_url("f/abc") == (
            "https://res.cloudinary.com/demo/image/upload/e_background_removal/f/abc.png"
        )

    @patch("requests.get")
    @patch("requests.post")
    def test_remove_background_checks_transformation(self, mock_post, mock_get, client):
        mock_post.return_value = _response(200, {"secure_url": "u", "public_id": "f/abc"})
        mock_get.return_value = _response(200)

        url = client.remove_background("https://fal.test/styled.png", folder="f")

        assert url == client.background_removed_url("f/abc")
        assert mock_get.call_args.args[0] == url
        assert mock_post.call_args.kwargs["data"]["file"] == "https://fal.test/styled.png"

    @patch("requests.get")
    @patch("requests.post")
    def test_remove_background_stores_context(self, mock_post, mock_get, client):
        mock_post.return_value = _response(200, {"secure_url": "u", "public_id": "f/abc"})
        mock_get.return_value = _response(200)

        client.remove_background(
            "https://fal.test/styled.png", folder="f", context={"dishName": "ladoo"}
        )

        assert mock_post.call_args.kwargs["data"]["context"] == "dishName=ladoo"

    @patch("requests.get")
    @patch("requests.post")
    def test_unavailable_transformation_raises(self, mock_post, mock_get, client):
        mock_post.return_value = _response(200, {"secure_url": "u", "public_id": "f/abc"})
        mock_get.return_value = _response(423)
        with pytest.raises(ProviderError, match="unavailable"):
            client.remove_background("https://fal.test/styled.png", folder="f")


class TestAdminAPI:
    @patch("requests.get")
    def test_list_resources_uses_basic_auth(self, mock_get, client):
        mock_get.return_value = _response(200, {"resources": []})
        client.list_resources(prefix="f/", max_results=10, next_cursor="c1")

        assert mock_get.call_args.args[0] == "https://api.cloudinary.com/v1_1/demo/resources/image/upload"
        assert mock_get.call_args.kwargs["auth"] == ("key", "secret")
        assert mock_get.call_args.kwargs["params"] == {
            "max_results": 10,
            "prefix": "f/",
            "next_cursor": "c1",
        }

    def test_iter_resources_follows_cursor(self, client):
        pages = [
            {"resources": [{"public_id": "1"}, {"public_id": "2"}], "next_cursor": "c"},
            {"resources": [{"public_id": "3"}]},
        ]
        with patch.object(client, "list_resources", side_effect=pages) as mock_list:
            ids = [r["public_id"] for r in client.iter_resources(prefix="f/")]
        assert ids == ["1", "2", "3"]
        assert mock_list.call_args_list[1].kwargs["next_cursor"] == "c"

    def test_iter_resources_respects_limit(self, client):
        page = {"resources": [{"public_id": str(i)} for i in range(5)], "next_cursor": "more"}
        with patch.object(client, "list_resources", return_value=page) as mock_list:
            resources = list(client.iter_resources(limit=3))
        assert len(resources) == 3
        assert mock_list.call_count == 1


class TestSearch:
    @patch("requests.post")
    def test_search_body(self, mock_post, client):
        mock_post.return_value = _response(200, {"resources": [], "total_count": 0})
        client.search("resource_type:image", max_results=20, next_cursor="n")

        assert mock_post.call_args.args[0] == "https://api.cloudinary.com/v1_1/demo/resources/search"
        body = mock_post.call_args.kwargs["json"]
        assert body["expression"] == "resource_type:image"
        assert body["sort_by"] == [{"created_at": "desc"}]
        assert body["next_cursor"] == "n"

    def test_expression_defaults_to_images(self):
        assert build_search_expression() == "resource_type:image"

    def test_expression_with_filters(self):
        expression = build_search_expression(
            prefix="cards/",
            tags=["diwali", "festive"],
            start_date="2024-10-01",
            dish_name="ladoo",
            min_size=100,
            fmt="png",
        )
        assert expression == (
            "resource_type:image AND public_id:cards/* AND (tags:diwali AND tags:festive) "
            "AND created_at>=2024-10-01 AND context.dishName:ladoo AND bytes>=100 AND format:png"
        )


class TestBrowserHelpers:
    def test_upload_signature(self, client):
        result = client.upload_signature(
            folder="f/videos", public_id="clip", resource_type="video", eager=" sp_auto ", timestamp=100
        )
        expected = sign_params(
            {"timestamp": 100, "folder": "f/videos", "public_id": "clip", "eager": "sp_auto"},
            "secret",
        )
        assert result["signature"] == expected
        assert result["eager"] == "sp_auto"
        assert result["transformation"] is None
        assert result["resourceType"] == "video"
        assert result["cloudName"] == "demo"

    def test_public_config_hides_secret(self, client):
        config = client.public_config()
        assert config == {
            "cloudName": "demo",
            "uploadPreset": "ml_default",
            "apiKey": "key",
            "hasApiKey": True,
            "hasApiSecret": True,
        }

    def test_video_mp4_url(self, client):
        assert client.video_mp4_url("f/videos/clip", 12) == (
            "https://res.cloudinary.com/demo/video/upload/f_mp4,q_auto:best/v12/f/videos/clip.mp4"
        )
