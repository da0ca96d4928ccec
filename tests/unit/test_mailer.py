"""Tests for postcards.core.mailer — Brevo email delivery."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
import requests

from postcards.core.mailer import BREVO_SEND_URL, BrevoMailer, MailerError, render_otp_email


class TestRenderOTPEmail:
    def test_contains_code_and_expiry(self):
        subject, html, text = render_otp_email("Asha", "123456", ttl_minutes=10)
        assert "Verify your email" in subject
        assert "123456" in html
        assert "123456" in text
        assert "10 minutes" in text

    def test_returning_user_variant(self):
        subject, html, _ = render_otp_email("Asha", "123456", returning=True)
        assert subject.startswith("Welcome Back")
        assert "Welcome Back!" in html

    def test_name_is_escaped(self):
        _, html, _ = render_otp_email("<script>", "123456")
        assert "<script>" not in html
        assert "&lt;script&gt;" in html


class TestBrevoMailer:
    @patch("requests.post")
    def test_send_posts_to_brevo(self, mock_post):
        mock_post.return_value = MagicMock(status_code=201, json=lambda: {"messageId": "m-1"})
        mailer = BrevoMailer("key", "noreply@test", "Postcards")

        message_id = mailer.send("a@example.com", "Asha", "Hi", "<p>Hi</p>", "Hi")

        assert message_id == "m-1"
        url = mock_post.call_args.args[0]
        kwargs = mock_post.call_args.kwargs
        assert url == BREVO_SEND_URL
        assert kwargs["headers"]["api-key"] == "key"
        assert kwargs["json"]["to"] == [{"email": "a@example.com", "name": "Asha"}]
        assert kwargs["json"]["sender"]["email"] == "noreply@test"

    def test_missing_key_raises(self):
        with pytest.raises(MailerError, match="not configured"):
            BrevoMailer(None, "noreply@test", "Postcards").send("a@b.co", "A", "s", "h", "t")

    @patch("requests.post")
    def test_rejected_request_raises(self, mock_post):
        mock_post.return_value = MagicMock(status_code=401, text="unauthorized")
        with pytest.raises(MailerError, match="401"):
            BrevoMailer("key", "noreply@test", "Postcards").send("a@b.co", "A", "s", "h", "t")

    @patch("requests.post", side_effect=requests.ConnectionError("down"))
    def test_transport_error_raises(self, mock_post):
        with pytest.raises(MailerError, match="down"):
            BrevoMailer("key", "noreply@test", "Postcards").send("a@b.co", "A", "s", "h", "t")

    @patch("requests.post")
    def test_send_otp_renders_and_sends(self, mock_post):
        mock_post.return_value = MagicMock(status_code=201, json=lambda: {"messageId": "m-2"})
        BrevoMailer("key", "noreply@test", "Postcards").send_otp("a@b.co", "Asha", "654321", 10)
        body = mock_post.call_args.kwargs["json"]
        assert "654321" in body["textContent"]
        assert body["subject"] == "Verify your email for Festive Postcards"
