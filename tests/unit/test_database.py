"""Tests for postcards.core.database — SQLite persistence."""

from __future__ import annotations

from datetime import timedelta

import pytest

from postcards.core.database import PostcardDB, normalize_email, utcnow


class TestUsers:
    def test_new_user_created(self, db: PostcardDB):
        user, created = db.upsert_verified_user("Asha@Example.com ", "Asha", "9999999999", "@asha")
        assert created is True
        assert user.email == "asha@example.com"
        assert user.is_verified is True
        assert user.handle == "@asha"

    def test_duplicate_email_updates_instead_of_duplicating(self, db: PostcardDB):
        db.upsert_verified_user("asha@example.com", "Asha", "111")
        user, created = db.upsert_verified_user("ASHA@example.com", "Asha R", "222")

        assert created is False
        assert user.name == "Asha R"
        assert user.phone == "222"
        assert len(db.list_users()) == 1

    def test_update_keeps_stored_values_when_fields_empty(self, db: PostcardDB):
        db.upsert_verified_user("asha@example.com", "Asha", "111", "@asha")
        user, _ = db.upsert_verified_user("asha@example.com")
        assert user.name == "Asha"
        assert user.phone == "111"
        assert user.handle == "@asha"

    def test_new_user_requires_name_and_phone(self, db: PostcardDB):
        with pytest.raises(ValueError):
            db.upsert_verified_user("new@example.com", name="New")
        assert db.get_user("new@example.com") is None

    def test_name_length_enforced(self, db: PostcardDB):
        with pytest.raises(ValueError, match="name"):
            db.upsert_verified_user("a@example.com", "x" * 101, "1")

    def test_list_users_newest_first(self, db: PostcardDB):
        db.upsert_verified_user("first@example.com", "First", "1")
        db.upsert_verified_user("second@example.com", "Second", "2")
        emails = [user.email for user in db.list_users()]
        assert emails == ["second@example.com", "first@example.com"]

    def test_to_dict_uses_camel_case(self, db: PostcardDB):
        user, _ = db.upsert_verified_user("a@example.com", "A", "1")
        data = user.to_dict()
        assert data["isVerified"] is True
        assert "createdAt" in data and "updatedAt" in data


class TestOTPs:
    def test_set_and_get(self, db: PostcardDB):
        expires = utcnow() + timedelta(minutes=10)
        db.set_otp("A@Example.com", "123456", expires)
        record = db.get_otp("a@example.com")
        assert record is not None
        assert record.otp == "123456"
        assert record.expires_at == expires

    def test_set_replaces_existing_code(self, db: PostcardDB):
        expires = utcnow() + timedelta(minutes=10)
        db.set_otp("a@example.com", "111111", expires)
        db.set_otp("a@example.com", "222222", expires)
        assert db.get_otp("a@example.com").otp == "222222"

    def test_delete(self, db: PostcardDB):
        db.set_otp("a@example.com", "111111", utcnow() + timedelta(minutes=10))
        assert db.delete_otp("a@example.com") is True
        assert db.delete_otp("a@example.com") is False
        assert db.get_otp("a@example.com") is None

    def test_purge_expired(self, db: PostcardDB):
        now = utcnow()
        db.set_otp("old@example.com", "111111", now - timedelta(seconds=1))
        db.set_otp("live@example.com", "222222", now + timedelta(minutes=5))

        assert db.purge_expired_otps(now) == 1
        assert db.get_otp("old@example.com") is None
        assert db.get_otp("live@example.com") is not None


class TestCards:
    def test_add_card(self, db: PostcardDB):
        card = db.add_card(
            "https://cdn.test/card.png",
            user_email="Asha@Example.com",
            dish_name="ladoo",
            background="diya",
            greeting="Happy Diwali",
        )
        assert card.id is not None
        assert card.user_email == "asha@example.com"
        assert card.dish_name == "ladoo"
        assert card.background == "diya"
        assert len(db.card_created_timestamps()) == 1

    def test_image_url_required(self, db: PostcardDB):
        with pytest.raises(ValueError, match="Image URL"):
            db.add_card("  ")

    def test_greeting_length_enforced(self, db: PostcardDB):
        with pytest.raises(ValueError, match="greeting"):
            db.add_card("https://cdn.test/card.png", greeting="x" * 501)
        assert db.card_created_timestamps() == []

    def test_card_timestamps(self, db: PostcardDB):
        db.add_card("https://cdn.test/1.png")
        db.add_card("https://cdn.test/2.png")
        stamps = db.card_created_timestamps()
        assert len(stamps) == 2
        assert all(stamp.tzinfo is not None for stamp in stamps)


def test_normalize_email():
    assert normalize_email("  Foo@Bar.COM ") == "foo@bar.com"
