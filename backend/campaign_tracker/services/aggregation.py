"""
Engagement aggregation: pure functions over posts and history snapshots.

Inputs are "post-like" records: ORM rows (Post, EngagementSnapshot) or plain
mappings from imports. Everything is recomputed from current state on each
call; there is no rollup table to invalidate.

Window keys: 24h, 72h, 7d, 30d, 60d, 90d.
Engagement = likes + comments + shares (views excluded).
"""
from __future__ import annotations

import math
from collections.abc import Iterable, Mapping
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any

from campaign_tracker.errors import ValidationError

METRIC_KEYS = ("views", "likes", "comments", "shares")
ENGAGEMENT_KEYS = ("engagement", "total_engagement")

WINDOW_HOURS: dict[str, int] = {
    "24h": 24,
    "72h": 72,
    "7d": 24 * 7,
    "30d": 24 * 30,
    "60d": 24 * 60,
    "90d": 24 * 90,
}

WINDOW_LABELS: dict[str, str] = {
    "24h": "Last 24 hours",
    "72h": "Last 72 hours",
    "7d": "Last 7 days",
    "30d": "Last 30 days",
    "60d": "Last 60 days",
    "90d": "Last 90 days",
}

_TIMESTAMP_KEYS = ("measured_at", "last_scraped_at", "scraped_at", "recorded_at")


class CanonicalStatus(str, Enum):
    pending = "Pending"
    briefed = "Briefed"
    active = "Active"
    done = "Done"


def record_value(item: Any, key: str, default: Any = None) -> Any:
    """Read a field from an ORM row, object or mapping."""
    if isinstance(item, Mapping):
        return item.get(key, default)
    return getattr(item, key, default)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse datetimes and ISO-8601 strings to aware UTC; anything else is None."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def measured_at(item: Any) -> datetime | None:
    for key in _TIMESTAMP_KEYS:
        value = record_value(item, key)
        if value is not None:
            return parse_timestamp(value)
    return None


def _as_int(value: Any) -> int:
    if value is None or isinstance(value, bool):
        return 0
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def metric_value(item: Any, metric_key: str) -> int:
    if metric_key in ENGAGEMENT_KEYS:
        stored = record_value(item, "total_engagement")
        if stored is not None:
            return _as_int(stored)
        return sum(_as_int(record_value(item, k)) for k in ("likes", "comments", "shares"))
    if metric_key not in METRIC_KEYS:
        raise ValidationError(f"unknown metric '{metric_key}'", field="metric")
    return _as_int(record_value(item, metric_key))


def window_hours(window_key: str) -> int:
    try:
        return WINDOW_HOURS[window_key]
    except KeyError:
        raise ValidationError(
            f"unknown window '{window_key}'; expected one of {', '.join(WINDOW_HOURS)}",
            field="window",
        ) from None


def canonical_status(raw: Any) -> CanonicalStatus:
    """Normalize a workflow status label. Unknown or missing values are Pending."""
    value = str(raw.value if isinstance(raw, Enum) else raw).strip().lower() if raw is not None else ""
    for status in CanonicalStatus:
        if status.name == value:
            return status
    return CanonicalStatus.pending


def compute_totals(posts: Iterable[Any]) -> dict[str, int]:
    totals = {key: 0 for key in METRIC_KEYS}
    for post in posts:
        for key in METRIC_KEYS:
            totals[key] += _as_int(record_value(post, key))
    totals["engagement"] = totals["likes"] + totals["comments"] + totals["shares"]
    return totals


def filter_by_window(items: Iterable[Any], window_key: str, now: datetime | None = None) -> list[Any]:
    """Items whose last measurement lies within [now - window, now]."""
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(hours=window_hours(window_key))
    selected = []
    for item in items:
        ts = measured_at(item)
        if ts is not None and cutoff <= ts <= now:
            selected.append(item)
    return selected


def _day_range(window_key: str, now: datetime) -> list[date]:
    days = math.ceil(window_hours(window_key) / 24)
    today = now.astimezone(timezone.utc).date()
    return [today - timedelta(days=offset) for offset in range(days - 1, -1, -1)]


def group_by_day(
    points: Iterable[Any],
    metric_key: str,
    window_key: str = "90d",
    now: datetime | None = None,
) -> list[dict[str, Any]]:
    """Fixed-length daily series (UTC days, oldest first); empty days are zero."""
    if metric_key not in METRIC_KEYS and metric_key not in ENGAGEMENT_KEYS:
        raise ValidationError(f"unknown metric '{metric_key}'", field="metric")
    now = now or datetime.now(timezone.utc)
    buckets: dict[date, int] = {day: 0 for day in _day_range(window_key, now)}
    for point in points:
        ts = measured_at(point)
        if ts is None:
            continue
        day = ts.astimezone(timezone.utc).date()
        if day in buckets:
            buckets[day] += metric_value(point, metric_key)
    return [{"date": day.isoformat(), "value": value} for day, value in buckets.items()]


def daily_series(points: Iterable[Any], window_key: str = "90d", now: datetime | None = None) -> list[dict[str, Any]]:
    """All metrics per UTC day over the window, for charting."""
    points = list(points)
    now = now or datetime.now(timezone.utc)
    series = {
        key: group_by_day(points, key, window_key, now)
        for key in (*METRIC_KEYS, "total_engagement")
    }
    rows = []
    for idx, day in enumerate(series["views"]):
        row = {"date": day["date"]}
        for key, values in series.items():
            row[key] = values[idx]["value"]
        rows.append(row)
    return rows


def window_totals(posts: Iterable[Any], now: datetime | None = None) -> list[dict[str, Any]]:
    """Totals of posts measured within each window, labeled for display."""
    posts = list(posts)
    now = now or datetime.now(timezone.utc)
    return [
        {
            "key": key,
            "label": WINDOW_LABELS[key],
            "hours": hours,
            "totals": compute_totals(filter_by_window(posts, key, now)),
        }
        for key, hours in WINDOW_HOURS.items()
    ]


def campaign_stats(posts: Iterable[Any]) -> dict[str, int]:
    posts = list(posts)
    totals = compute_totals(posts)
    return {
        "total_views": totals["views"],
        "total_likes": totals["likes"],
        "total_comments": totals["comments"],
        "total_shares": totals["shares"],
        "total_engagement": totals["engagement"],
        "post_count": len(posts),
    }


def latest_per_day(points: Iterable[Any], key: str = "post_id") -> list[Any]:
    """Last point of each series (default: each post) per UTC day.

    Snapshots carry cumulative counters, so only the day's final reading of a
    post should contribute to that day's total.
    """
    latest: dict[tuple[Any, date], tuple[datetime, Any]] = {}
    for point in points:
        ts = measured_at(point)
        if ts is None:
            continue
        slot = (record_value(point, key), ts.astimezone(timezone.utc).date())
        current = latest.get(slot)
        if current is None or ts >= current[0]:
            latest[slot] = (ts, point)
    return [point for _, point in sorted(latest.values(), key=lambda pair: pair[0])]
