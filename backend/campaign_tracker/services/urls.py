"""
URL canonicalization for post deduplication.

canonicalize() strips tracking parameters, fragments and trailing slashes and
lowercases the host so that the same post shared through different links maps
to a single post key: ``platform:canonical_url``.
"""
from __future__ import annotations

import re
import uuid
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from campaign_tracker.errors import ValidationError
from campaign_tracker.models import Platform

PLACEHOLDER_SCHEME = "placeholder://"

TRACKING_PARAMS = {
    "igsh", "igshid", "ig_rid",
    "utm_source", "utm_medium", "utm_campaign", "utm_content", "utm_term",
    "fbclid", "fb_action_ids", "fb_action_types", "fb_source", "fb_ref",
    "ref", "ref_src", "ref_url",
    "share_id", "tt_from", "is_copy_url", "is_from_webapp", "sender_device", "sender_web_id",
    "feature", "app", "gclid", "msclkid", "si",
    "_ga", "mc_cid", "mc_eid",
}

# host suffix -> platform
PLATFORM_HOSTS: dict[str, Platform] = {
    "tiktok.com": Platform.tiktok,
    "instagram.com": Platform.instagram,
    "youtube.com": Platform.youtube,
    "youtu.be": Platform.youtube,
    "twitter.com": Platform.twitter,
    "x.com": Platform.twitter,
    "facebook.com": Platform.facebook,
    "fb.com": Platform.facebook,
    "fb.watch": Platform.facebook,
}

_INSTAGRAM_ID = re.compile(r"/(?:p|reel|reels)/([A-Za-z0-9_-]+)")
_TIKTOK_ID = re.compile(r"/video/(\d+)")
_YOUTUBE_SHORTS_ID = re.compile(r"/shorts/([A-Za-z0-9_-]+)")
_TWITTER_ID = re.compile(r"/status/(\d+)")
_FACEBOOK_ID = re.compile(r"/(\d+)/?$")


def placeholder_url() -> str:
    """Synthetic, guaranteed-unique URL for posts created without a link."""
    return f"{PLACEHOLDER_SCHEME}{uuid.uuid4()}"


def is_placeholder_url(url: str | None) -> bool:
    return isinstance(url, str) and url.startswith(PLACEHOLDER_SCHEME)


def coerce_platform(value: Platform | str | None) -> Platform | None:
    """Map a free-form platform label ("TikTok", " youtube ") to Platform, or None."""
    if value is None or isinstance(value, Platform):
        return value
    label = str(value).strip().lower()
    if label == "x":
        return Platform.twitter
    try:
        return Platform(label)
    except ValueError:
        return None


def _host(url: str) -> str:
    host = (urlsplit(url).hostname or "").lower()
    return host[4:] if host.startswith("www.") else host


def detect_platform(url: str) -> Platform | None:
    host = _host(url)
    for suffix, platform in PLATFORM_HOSTS.items():
        if host == suffix or host.endswith("." + suffix):
            return platform
    return None


def normalize_url(url: str) -> str:
    """Drop tracking params, fragment and trailing slash; lowercase scheme/host."""
    parts = urlsplit(url.strip())
    host = (parts.hostname or "").lower()
    if host.startswith("www."):
        host = host[4:]
    netloc = f"{host}:{parts.port}" if parts.port else host
    query = urlencode([
        (k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True)
        if k.lower() not in TRACKING_PARAMS
    ])
    path = parts.path
    if path.endswith("/") and path != "/":
        path = path.rstrip("/")
    return urlunsplit((parts.scheme.lower(), netloc, path, query, ""))


def extract_post_id(url: str, platform: Platform | str) -> str | None:
    """Platform-native post id, if the URL carries one."""
    if not url or is_placeholder_url(url):
        return None
    platform = coerce_platform(platform)
    parts = urlsplit(url)
    path = parts.path

    if platform is Platform.instagram:
        match = _INSTAGRAM_ID.search(path)
        return match.group(1) if match else None
    if platform is Platform.tiktok:
        match = _TIKTOK_ID.search(path)
        return match.group(1) if match else None
    if platform is Platform.youtube:
        if _host(url) == "youtu.be":
            return path.lstrip("/").split("/")[0] or None
        video_id = dict(parse_qsl(parts.query)).get("v")
        if video_id:
            return video_id
        match = _YOUTUBE_SHORTS_ID.search(path)
        return match.group(1) if match else None
    if platform is Platform.twitter:
        match = _TWITTER_ID.search(path)
        return match.group(1) if match else None
    if platform is Platform.facebook:
        match = _FACEBOOK_ID.search(path)
        return match.group(1) if match else None
    return None


def canonicalize(url: str, platform_hint: Platform | str | None = None) -> tuple[Platform, str]:
    """Return (platform, canonical_url) for a raw post URL.

    Raises ValidationError for empty, malformed or unsupported URLs.
    """
    raw = (url or "").strip()
    if not raw:
        raise ValidationError("URL is required", field="url")

    hint = coerce_platform(platform_hint)
    if is_placeholder_url(raw):
        return hint or Platform.unknown, raw

    parts = urlsplit(raw)
    if parts.scheme.lower() not in ("http", "https") or not parts.hostname:
        raise ValidationError(f"malformed URL '{raw}'", field="url")

    platform = detect_platform(raw) or hint
    if platform is None or platform is Platform.unknown:
        raise ValidationError(
            "unsupported platform; supported: TikTok, Instagram, YouTube, Twitter, Facebook",
            field="url",
        )

    canonical = normalize_url(raw)
    if platform is Platform.youtube:
        video_id = extract_post_id(raw, platform)
        if video_id:
            canonical = f"https://youtube.com/watch?v={video_id}"
    return platform, canonical


def make_post_key(platform: Platform | str, canonical_url: str) -> str:
    value = platform.value if isinstance(platform, Platform) else str(platform).lower()
    return f"{value}:{canonical_url}"
