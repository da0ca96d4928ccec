"""Dashboard aggregation.

Counts registrations and generations over fixed windows and per day.  The
generation count has two sources: the ``generated_cards`` table and the
background-removed folder on Cloudinary.  The dashboard prefers Cloudinary
and falls back to the database when the Cloudinary call fails.

All windows are computed in UTC.  "Today" starts at midnight of ``now``'s
date; the 7 and 30 day windows are measured back from that midnight.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterable
from datetime import datetime, timedelta, timezone

from postcards.core.clients import CloudinaryClient, ProviderError
from postcards.core.database import PostcardDB, utcnow

logger = logging.getLogger(__name__)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp as returned by Cloudinary (``...Z``)."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return _as_utc(datetime.fromisoformat(value))


def _midnight(now: datetime) -> datetime:
    now = _as_utc(now)
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def count_windows(timestamps: Iterable[datetime], now: datetime | None = None) -> dict[str, int]:
    """Count timestamps in the standard dashboard windows.

    Returns:
        Dictionary with ``total``, ``today``, ``last_7_days`` and ``last_30_days``
    """
    today = _midnight(now or utcnow())
    last_7 = today - timedelta(days=7)
    last_30 = today - timedelta(days=30)

    counts = {"total": 0, "today": 0, "last_7_days": 0, "last_30_days": 0}
    for ts in timestamps:
        ts = _as_utc(ts)
        counts["total"] += 1
        if ts >= today:
            counts["today"] += 1
        if ts >= last_7:
            counts["last_7_days"] += 1
        if ts >= last_30:
            counts["last_30_days"] += 1
    return counts


def daily_distribution(
    timestamps: Iterable[datetime], days: int = 30, now: datetime | None = None
) -> dict[str, int]:
    """Count timestamps per calendar day for the last *days* days.

    Days with no events are present with a zero count, and keys are ordered
    oldest first.
    """
    today = _midnight(now or utcnow())
    keys = [(today - timedelta(days=offset)).date().isoformat() for offset in range(days - 1, -1, -1)]
    distribution = dict.fromkeys(keys, 0)

    for ts in timestamps:
        key = _as_utc(ts).date().isoformat()
        if key in distribution:
            distribution[key] += 1
    return distribution


def database_counts(db: PostcardDB, now: datetime | None = None) -> dict:
    return {
        "registrations": count_windows(db.user_created_timestamps(), now),
        "generations": count_windows(db.card_created_timestamps(), now),
    }


def cloudinary_counts(
    cloudinary: CloudinaryClient,
    prefix: str,
    limit: int = 6000,
    now: datetime | None = None,
) -> dict:
    """Count generated images stored on Cloudinary.

    Walks the Admin API listing under *prefix*, up to *limit* resources.
    When the first page reports ``total_count`` it is used as the total,
    since the walk may stop early.

    Raises:
        ProviderError: If Cloudinary is not configured or the listing fails
    """
    first_page = cloudinary.list_resources(prefix=prefix, max_results=1)
    reported_total = first_page.get("total_count")

    timestamps = [
        parse_timestamp(resource["created_at"])
        for resource in cloudinary.iter_resources(prefix=prefix, limit=limit)
        if resource.get("created_at")
    ]
    counts = count_windows(timestamps, now)
    if isinstance(reported_total, int) and reported_total > counts["total"]:
        counts["total"] = reported_total

    logger.info(f"Cloudinary count for {prefix}: {counts['total']} ({len(timestamps)} walked)")
    return {**counts, "timestamps": timestamps}


def dashboard_summary(
    db: PostcardDB,
    cloudinary: CloudinaryClient,
    prefix: str,
    limit: int = 6000,
    days: int = 30,
    now: datetime | None = None,
) -> dict:
    """Combine registrations and generations for the dashboard.

    Generations come from Cloudinary when possible.  On failure the
    database counts are used and the error is reported under
    ``generations.error``.
    """
    now = now or utcnow()
    user_times = db.user_created_timestamps()
    registrations = count_windows(user_times, now)

    try:
        cloud = cloudinary_counts(cloudinary, prefix, limit, now)
        generation_times = cloud.pop("timestamps")
        generations = {**cloud, "source": "cloudinary", "error": None}
    except ProviderError as e:
        logger.warning(f"Cloudinary count failed, using database count: {e}")
        generation_times = db.card_created_timestamps()
        generations = {**count_windows(generation_times, now), "source": "database", "error": str(e)}

    return {
        "registrations": registrations,
        "generations": generations,
        "daily": {
            "registrations": daily_distribution(user_times, days, now),
            "generations": daily_distribution(generation_times, days, now),
        },
        "lastUpdated": now.isoformat(),
    }


def _context_value(asset: dict, key: str) -> str | None:
    context = asset.get("context") or {}
    custom = context.get("custom") if isinstance(context.get("custom"), dict) else context
    value = custom.get(key)
    return value if isinstance(value, str) else None


def transform_asset(asset: dict) -> dict:
    """Flatten a Cloudinary resource into the dashboard's asset shape."""
    public_id = asset.get("public_id", "")
    return {
        "id": public_id,
        "url": asset.get("secure_url"),
        "width": asset.get("width"),
        "height": asset.get("height"),
        "format": asset.get("format"),
        "size": asset.get("bytes"),
        "createdAt": asset.get("created_at"),
        "tags": asset.get("tags") or [],
        "folder": asset.get("folder"),
        "filename": public_id.split("/")[-1],
        "dishName": _context_value(asset, "dishName") or "Unknown",
        "background": _context_value(asset, "background") or "default",
        "greeting": _context_value(asset, "greeting") or "",
        "userEmail": _context_value(asset, "userEmail"),
    }


def summarize_assets(assets: list[dict]) -> dict[str, dict[str, int]]:
    """Group transformed assets by dish, background, format and creation date."""
    by_date: Counter[str] = Counter()
    for asset in assets:
        if asset.get("createdAt"):
            by_date[parse_timestamp(asset["createdAt"]).date().isoformat()] += 1

    return {
        "byDish": dict(Counter(asset["dishName"] for asset in assets)),
        "byBackground": dict(Counter(asset["background"] for asset in assets)),
        "byFormat": dict(Counter(asset["format"] or "unknown" for asset in assets)),
        "byDate": dict(by_date),
    }
