from __future__ import annotations

import logging
from typing import Any

import httpx

from campaign_tracker.errors import FetchFailure
from campaign_tracker.integrations.circuit_breaker import CircuitBreaker
from campaign_tracker.integrations.fetcher import FetchedMetrics, MetricFetcher, engagement_rate
from campaign_tracker.models import Platform
from campaign_tracker.settings import get_settings

logger = logging.getLogger(__name__)

APIFY_RUN_URL = "https://api.apify.com/v2/acts/{actor_id}/run-sync-get-dataset-items"

ACTORS: dict[Platform, str] = {
    Platform.tiktok: "clockworks/tiktok-video-scraper",
    Platform.instagram: "apify/instagram-scraper",
    Platform.youtube: "streamers/youtube-scraper",
    Platform.twitter: "apidojo/tweet-scraper",
    Platform.facebook: "apify/facebook-posts-scraper",
}


def _normalize_actor_id(actor_id: str) -> str:
    """Apify expects username~actor-name."""
    if "~" in actor_id:
        return actor_id
    if "/" in actor_id:
        return actor_id.replace("/", "~", 1)
    return actor_id


def _parse_int(*values: Any) -> int:
    for val in values:
        if val is None or val == "":
            continue
        try:
            return int(val)
        except (TypeError, ValueError):
            continue
    return 0


def _actor_input(platform: Platform, url: str) -> dict[str, Any]:
    if platform is Platform.tiktok:
        return {"postURLs": [url], "shouldDownloadVideos": False, "shouldDownloadCovers": False}
    if platform is Platform.instagram:
        return {"directUrls": [url], "resultsLimit": 1, "resultsType": "posts", "addParentData": False}
    if platform is Platform.youtube:
        return {"startUrls": [{"url": url}], "maxResults": 1}
    if platform is Platform.twitter:
        return {"startUrls": [url], "maxItems": 1}
    return {"startUrls": [{"url": url}], "resultsLimit": 1}


def parse_item(platform: Platform, item: dict[str, Any]) -> FetchedMetrics:
    """Map one actor dataset item onto the shared metric shape."""
    stats = item.get("stats") or {}
    if platform is Platform.tiktok:
        views = _parse_int(item.get("playCount"), item.get("plays"), stats.get("playCount"))
        likes = _parse_int(item.get("diggCount"), item.get("hearts"), stats.get("diggCount"))
        comments = _parse_int(item.get("commentCount"), stats.get("commentCount"))
        shares = _parse_int(item.get("shareCount"), stats.get("shareCount"))
        post_id = item.get("id")
    elif platform is Platform.instagram:
        views = _parse_int(item.get("videoViewCount"), item.get("videoPlayCount"))
        likes = _parse_int(item.get("likesCount"), item.get("likes"))
        comments = _parse_int(item.get("commentsCount"), item.get("comments"))
        shares = 0
        post_id = item.get("shortCode") or item.get("id")
    elif platform is Platform.youtube:
        views = _parse_int(item.get("viewCount"), item.get("views"))
        likes = _parse_int(item.get("likes"), item.get("likeCount"))
        comments = _parse_int(item.get("commentsCount"), item.get("commentCount"))
        shares = 0
        post_id = item.get("id")
    elif platform is Platform.twitter:
        views = _parse_int(item.get("viewCount"), item.get("views"))
        likes = _parse_int(item.get("likeCount"), item.get("favorite_count"))
        comments = _parse_int(item.get("replyCount"), item.get("reply_count"))
        shares = _parse_int(item.get("retweetCount"), item.get("retweet_count"))
        post_id = item.get("id")
    else:
        views = _parse_int(item.get("viewsCount"), item.get("videoViewCount"))
        likes = _parse_int(item.get("likes"), item.get("reactionsCount"))
        comments = _parse_int(item.get("comments"), item.get("commentsCount"))
        shares = _parse_int(item.get("shares"), item.get("sharesCount"))
        post_id = item.get("postId") or item.get("id")

    return FetchedMetrics(
        views=views,
        likes=likes,
        comments=comments,
        shares=shares,
        engagement_rate=engagement_rate(views, likes, comments, shares),
        external_post_id=str(post_id) if post_id else None,
        raw=item,
    )


class ApifyMetricFetcher:
    """Fetches post counters by running one Apify actor per platform."""

    name = "apify"

    def __init__(self, token: str | None = None, *, timeout_s: float | None = None, client: httpx.AsyncClient | None = None):
        self.token = token
        # one actor run must fit inside the supervisor's per-fetch deadline
        self.timeout_s = timeout_s if timeout_s is not None else get_settings().scrape_fetch_timeout_sec
        self._client = client

    async def _run_actor(self, actor_id: str, payload: dict[str, Any]) -> list[dict]:
        normalized_id = _normalize_actor_id(actor_id)
        url = APIFY_RUN_URL.format(actor_id=normalized_id)
        params = {"token": self.token}

        try:
            if self._client is not None:
                resp = await self._client.post(url, params=params, json=payload)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_s) as client:
                    resp = await client.post(url, params=params, json=payload)
        except httpx.TimeoutException as exc:
            raise FetchFailure(f"Apify request timeout: {exc}", retryable=True, provider=self.name) from exc
        except httpx.HTTPError as exc:
            raise FetchFailure(f"Apify network error: {exc}", retryable=True, provider=self.name) from exc

        if resp.status_code == 402:
            raise FetchFailure("Apify credit limit reached", retryable=False, provider=self.name)
        if resp.status_code in (401, 403):
            raise FetchFailure(
                f"Apify authentication required ({resp.status_code})", retryable=False, provider=self.name
            )
        if resp.status_code >= 400:
            retryable = resp.status_code == 429 or resp.status_code >= 500
            raise FetchFailure(
                f"Apify API error ({resp.status_code}) for {normalized_id}: {resp.text[:200]}",
                retryable=retryable,
                provider=self.name,
            )

        try:
            data = resp.json()
        except ValueError as exc:
            raise FetchFailure(f"Apify returned invalid JSON: {exc}", retryable=True, provider=self.name) from exc
        items = data if isinstance(data, list) else data.get("items") or data.get("data") or []
        return items

    async def fetch(self, url: str, platform: Platform) -> FetchedMetrics:
        if not self.token:
            raise FetchFailure("Apify fetcher not configured (APIFY_TOKEN missing)", retryable=False, provider=self.name)
        actor_id = ACTORS.get(platform)
        if actor_id is None:
            raise FetchFailure(f"unsupported platform '{platform}'", retryable=False, provider=self.name)

        items = await self._run_actor(actor_id, _actor_input(platform, url))
        if not items:
            raise FetchFailure(
                f"No data returned from {platform.value} scraper. The post may be private or deleted.",
                retryable=False,
                provider=self.name,
            )
        item = items[0]
        if isinstance(item, dict) and item.get("error"):
            raise FetchFailure(f"{platform.value} scraper error: {item['error']}", retryable=False, provider=self.name)

        metrics = parse_item(platform, item)
        logger.debug(f"[apify] {platform.value} {url}: views={metrics.views} likes={metrics.likes}")
        return metrics


_fetcher: MetricFetcher | None = None


def get_metric_fetcher() -> MetricFetcher:
    """Process-wide fetcher; the breaker state is shared by all jobs."""
    global _fetcher
    if _fetcher is None:
        settings = get_settings()
        _fetcher = CircuitBreaker(
            ApifyMetricFetcher(settings.apify_token),
            failure_threshold=settings.circuit_breaker_failure_threshold,
            reset_timeout=settings.circuit_breaker_reset_sec,
        )
    return _fetcher
