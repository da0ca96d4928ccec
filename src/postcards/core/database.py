"""SQLite persistence for users, OTP codes and generated cards.

The service keeps three flat tables with no cross-table foreign keys:

- ``users`` keyed by a unique, lower-cased email
- ``otps`` with one live code per email and an ``expires_at`` timestamp
- ``generated_cards`` recording every successful postcard generation

SQLite has no TTL index, so expired OTP rows are removed by
:meth:`PostcardDB.purge_expired_otps`, which the OTP service calls on every
issuance.  Every method opens a short-lived connection, which keeps the
handle safe to share across FastAPI's worker threads.
"""

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def _to_iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat()


def _from_iso(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def normalize_email(email: str) -> str:
    """Lower-case and trim an email address for storage and lookup."""
    return email.strip().lower()


@dataclass
class UserRecord:
    id: int
    name: str
    email: str
    phone: str
    handle: str | None
    is_verified: bool
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "handle": self.handle,
            "isVerified": self.is_verified,
            "createdAt": _to_iso(self.created_at),
            "updatedAt": _to_iso(self.updated_at),
        }


@dataclass
class OTPRecord:
    email: str
    otp: str
    expires_at: datetime
    created_at: datetime

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) > self.expires_at


@dataclass
class CardRecord:
    id: int
    image_url: str
    user_email: str | None
    dish_name: str | None
    background: str | None
    greeting: str | None
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "imageUrl": self.image_url,
            "userEmail": self.user_email,
            "dishName": self.dish_name,
            "background": self.background,
            "greeting": self.greeting,
            "createdAt": _to_iso(self.created_at),
            "updatedAt": _to_iso(self.updated_at),
        }


class PostcardDB:
    """Manage the postcard database using SQLite.

    Field limits mirror the public registration form: names up to 100
    characters, phone numbers up to 20, handles up to 50 and greetings up
    to 500.  Violations raise ``ValueError`` before anything is written.
    """

    NAME_MAX = 100
    PHONE_MAX = 20
    HANDLE_MAX = 50
    GREETING_MAX = 500

    def __init__(self, db_path: Path):
        """Initialize the database.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize_db()
        logger.info(f"Initialized postcard database at {self.db_path}")

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _initialize_db(self) -> None:
        """Create database schema if it doesn't exist."""
        with self._connect() as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    email TEXT NOT NULL UNIQUE,
                    phone TEXT NOT NULL,
                    handle TEXT,
                    is_verified INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_users_created_at
                ON users(created_at DESC)
                """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS otps (
                    email TEXT PRIMARY KEY,
                    otp TEXT NOT NULL,
                    expires_at TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_otps_expires_at
                ON otps(expires_at)
                """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS generated_cards (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    image_url TEXT NOT NULL,
                    user_email TEXT,
                    dish_name TEXT,
                    background TEXT,
                    greeting TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_cards_created_at
                ON generated_cards(created_at DESC)
                """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_cards_user_email
                ON generated_cards(user_email)
                """)

            conn.commit()

    # -- Users ---------------------------------------------------------------

    @staticmethod
    def _row_to_user(row: sqlite3.Row) -> UserRecord:
        return UserRecord(
            id=row["id"],
            name=row["name"],
            email=row["email"],
            phone=row["phone"],
            handle=row["handle"],
            is_verified=bool(row["is_verified"]),
            created_at=_from_iso(row["created_at"]),
            updated_at=_from_iso(row["updated_at"]),
        )

    def get_user(self, email: str) -> UserRecord | None:
        """Look up a user by email.

        Args:
            email: Email address (case and surrounding whitespace ignored)

        Returns:
            The user, or None when no user is registered with that email
        """
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE email = ?",
                (normalize_email(email),),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def upsert_verified_user(
        self,
        email: str,
        name: str | None = None,
        phone: str | None = None,
        handle: str | None = None,
    ) -> tuple[UserRecord, bool]:
        """Create a verified user or refresh an existing one.

        Existing users keep their stored values for any field passed as
        empty, so a returning user can verify with only an email.

        Args:
            email: Email address identifying the user
            name: Display name (required for new users)
            phone: Phone number (required for new users)
            handle: Optional social handle

        Returns:
            Tuple of (user, created) where created is False for updates

        Raises:
            ValueError: If a new user lacks name or phone, or a field is too long
        """
        email = normalize_email(email)
        name = (name or "").strip() or None
        phone = (phone or "").strip() or None
        handle = (handle or "").strip() or None
        self._check_lengths(name=name, phone=phone, handle=handle)

        now = _to_iso(utcnow())
        with self._connect() as conn:
            cursor = conn.cursor()
            existing = cursor.execute(
                "SELECT * FROM users WHERE email = ?", (email,)
            ).fetchone()

            if existing:
                cursor.execute(
                    """
                    UPDATE users
                    SET name = COALESCE(?, name),
                        phone = COALESCE(?, phone),
                        handle = COALESCE(?, handle),
                        is_verified = 1,
                        updated_at = ?
                    WHERE email = ?
                    """,
                    (name, phone, handle, now, email),
                )
                created = False
                logger.info(f"Updated existing user: {email}")
            else:
                if not name or not phone:
                    raise ValueError("name and phone are required to register a new user")
                cursor.execute(
                    """
                    INSERT INTO users (name, email, phone, handle, is_verified, created_at, updated_at)
                    VALUES (?, ?, ?, ?, 1, ?, ?)
                    """,
                    (name, email, phone, handle, now, now),
                )
                created = True
                logger.info(f"Created new user: {email}")

            conn.commit()
            row = cursor.execute("SELECT * FROM users WHERE email = ?", (email,)).fetchone()

        return self._row_to_user(row), created

    def list_users(self) -> list[UserRecord]:
        """Return all users, newest first."""
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM users ORDER BY created_at DESC, id DESC").fetchall()
        return [self._row_to_user(row) for row in rows]

    def user_created_timestamps(self) -> list[datetime]:
        with self._connect() as conn:
            rows = conn.execute("SELECT created_at FROM users").fetchall()
        return [_from_iso(row["created_at"]) for row in rows]

    def _check_lengths(self, **fields: str | None) -> None:
        limits = {
            "name": self.NAME_MAX,
            "phone": self.PHONE_MAX,
            "handle": self.HANDLE_MAX,
            "greeting": self.GREETING_MAX,
        }
        for field, value in fields.items():
            if value is not None and len(value) > limits[field]:
                raise ValueError(f"{field} cannot exceed {limits[field]} characters")

    # -- OTPs ----------------------------------------------------------------

    def set_otp(self, email: str, otp: str, expires_at: datetime) -> None:
        """Store a code for an email, replacing any existing code."""
        email = normalize_email(email)
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO otps (email, otp, expires_at, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (email, otp, _to_iso(expires_at), _to_iso(utcnow())),
            )
            conn.commit()
        logger.info(f"OTP stored for {email}, expires at {_to_iso(expires_at)}")

    def get_otp(self, email: str) -> OTPRecord | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM otps WHERE email = ?",
                (normalize_email(email),),
            ).fetchone()
        if not row:
            return None
        return OTPRecord(
            email=row["email"],
            otp=row["otp"],
            expires_at=_from_iso(row["expires_at"]),
            created_at=_from_iso(row["created_at"]),
        )

    def delete_otp(self, email: str) -> bool:
        """Delete the code for an email.

        Returns:
            True if a code was deleted, False if none was stored
        """
        email = normalize_email(email)
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM otps WHERE email = ?", (email,))
            conn.commit()
            deleted = cursor.rowcount > 0
        if deleted:
            logger.info(f"OTP deleted for {email}")
        return deleted

    def purge_expired_otps(self, now: datetime | None = None) -> int:
        """Delete every code whose expiry has passed.

        Returns:
            Number of rows removed
        """
        cutoff = _to_iso(now or utcnow())
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM otps WHERE expires_at < ?", (cutoff,))
            conn.commit()
            removed = cursor.rowcount
        if removed:
            logger.debug(f"Purged {removed} expired OTP(s)")
        return removed

    # -- Generated cards -----------------------------------------------------

    @staticmethod
    def _row_to_card(row: sqlite3.Row) -> CardRecord:
        return CardRecord(
            id=row["id"],
            image_url=row["image_url"],
            user_email=row["user_email"],
            dish_name=row["dish_name"],
            background=row["background"],
            greeting=row["greeting"],
            created_at=_from_iso(row["created_at"]),
            updated_at=_from_iso(row["updated_at"]),
        )

    def add_card(
        self,
        image_url: str,
        user_email: str | None = None,
        dish_name: str | None = None,
        background: str | None = None,
        greeting: str | None = None,
    ) -> CardRecord:
        """Record a generated postcard.

        Raises:
            ValueError: If image_url is empty or greeting is too long
        """
        image_url = (image_url or "").strip()
        if not image_url:
            raise ValueError("Image URL is required")
        greeting = greeting.strip() if greeting else greeting
        self._check_lengths(greeting=greeting)

        now = _to_iso(utcnow())
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO generated_cards
                    (image_url, user_email, dish_name, background, greeting, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    image_url,
                    normalize_email(user_email) if user_email else None,
                    dish_name.strip() if dish_name else dish_name,
                    background.strip() if background else background,
                    greeting,
                    now,
                    now,
                ),
            )
            conn.commit()
            row = conn.execute(
                "SELECT * FROM generated_cards WHERE id = ?", (cursor.lastrowid,)
            ).fetchone()

        card = self._row_to_card(row)
        logger.info(f"Generated card saved to database: {card.id}")
        return card

    def card_created_timestamps(self) -> list[datetime]:
        with self._connect() as conn:
            rows = conn.execute("SELECT created_at FROM generated_cards").fetchall()
        return [_from_iso(row["created_at"]) for row in rows]
