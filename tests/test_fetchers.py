"""
Tests for the metric fetcher integrations.

Tests cover:
- Circuit breaker state transitions
- Apify item parsing per platform
- Apify HTTP error classification (httpx MockTransport)
"""

import httpx
import pytest

from campaign_tracker.errors import FetchFailure
from campaign_tracker.integrations.apify_fetcher import ApifyMetricFetcher, _normalize_actor_id, parse_item
from campaign_tracker.integrations.circuit_breaker import CircuitBreaker, CircuitState
from campaign_tracker.integrations.fetcher import FetchedMetrics
from campaign_tracker.models import Platform
from campaign_tracker.settings import get_settings


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class FlakyFetcher:
    name = "flaky"

    def __init__(self):
        self.error = None
        self.calls = 0

    async def fetch(self, url, platform):
        self.calls += 1
        if self.error:
            raise self.error
        return FetchedMetrics(views=1)


class TestCircuitBreaker:

    @pytest.mark.asyncio
    async def test_opens_after_threshold_and_rejects(self):
        inner, clock = FlakyFetcher(), FakeClock()
        breaker = CircuitBreaker(inner, failure_threshold=2, reset_timeout=30, clock=clock)
        inner.error = FetchFailure("upstream 503", retryable=True)

        for _ in range(2):
            with pytest.raises(FetchFailure):
                await breaker.fetch("u", Platform.tiktok)
        assert breaker.state is CircuitState.open

        with pytest.raises(FetchFailure) as exc:
            await breaker.fetch("u", Platform.tiktok)
        assert exc.value.retryable
        assert inner.calls == 2

    @pytest.mark.asyncio
    async def test_half_open_success_closes(self):
        inner, clock = FlakyFetcher(), FakeClock()
        breaker = CircuitBreaker(inner, failure_threshold=1, reset_timeout=30, clock=clock)
        inner.error = RuntimeError("connection refused")
        with pytest.raises(RuntimeError):
            await breaker.fetch("u", Platform.tiktok)
        assert breaker.state is CircuitState.open

        clock.now += 31
        inner.error = None
        result = await breaker.fetch("u", Platform.tiktok)
        assert result.views == 1
        assert breaker.state is CircuitState.closed
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(self):
        inner, clock = FlakyFetcher(), FakeClock()
        breaker = CircuitBreaker(inner, failure_threshold=3, reset_timeout=30, clock=clock)
        inner.error = FetchFailure("timeout", retryable=True)
        for _ in range(3):
            with pytest.raises(FetchFailure):
                await breaker.fetch("u", Platform.tiktok)

        clock.now += 31
        with pytest.raises(FetchFailure):
            await breaker.fetch("u", Platform.tiktok)
        assert breaker.state is CircuitState.open
        assert breaker.next_attempt_at == clock.now + 30

    @pytest.mark.asyncio
    async def test_permanent_failures_do_not_trip(self):
        inner = FlakyFetcher()
        breaker = CircuitBreaker(inner, failure_threshold=1)
        inner.error = FetchFailure("post is private or deleted", retryable=False)
        for _ in range(3):
            with pytest.raises(FetchFailure):
                await breaker.fetch("u", Platform.tiktok)
        assert breaker.state is CircuitState.closed
        assert breaker.stats()["failure_count"] == 0

    def test_reset(self):
        breaker = CircuitBreaker(FlakyFetcher())
        breaker.state = CircuitState.open
        breaker.failure_count = 9
        breaker.reset()
        assert breaker.stats()["state"] == "CLOSED"


class TestParseItem:

    def test_tiktok(self):
        item = {"id": "731", "playCount": 5000, "diggCount": 400, "commentCount": 30, "shareCount": 70}
        metrics = parse_item(Platform.tiktok, item)
        assert (metrics.views, metrics.likes, metrics.comments, metrics.shares) == (5000, 400, 30, 70)
        assert metrics.engagement_rate == 10.0
        assert metrics.external_post_id == "731"

    def test_tiktok_nested_stats(self):
        metrics = parse_item(Platform.tiktok, {"stats": {"playCount": "12", "diggCount": 3}})
        assert (metrics.views, metrics.likes) == (12, 3)

    def test_instagram(self):
        item = {"shortCode": "AbC", "videoViewCount": 900, "likesCount": 90, "commentsCount": 9}
        metrics = parse_item(Platform.instagram, item)
        assert (metrics.views, metrics.likes, metrics.comments, metrics.shares) == (900, 90, 9, 0)
        assert metrics.external_post_id == "AbC"

    def test_youtube_and_twitter(self):
        yt = parse_item(Platform.youtube, {"viewCount": 10, "likes": 2, "commentsCount": 1})
        assert (yt.views, yt.likes, yt.comments) == (10, 2, 1)
        tw = parse_item(Platform.twitter, {"viewCount": 50, "likeCount": 5, "replyCount": 1, "retweetCount": 2})
        assert (tw.views, tw.likes, tw.comments, tw.shares) == (50, 5, 1, 2)

    def test_garbage_values_are_zero(self):
        metrics = parse_item(Platform.facebook, {"viewsCount": "n/a", "likes": None})
        assert (metrics.views, metrics.likes) == (0, 0)
        assert metrics.external_post_id is None

    def test_actor_id_normalization(self):
        assert _normalize_actor_id("apify/instagram-scraper") == "apify~instagram-scraper"
        assert _normalize_actor_id("apify~instagram-scraper") == "apify~instagram-scraper"


def _fetcher_with(handler, token="tok"):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ApifyMetricFetcher(token, client=client)


class TestApifyMetricFetcher:

    def test_timeout_follows_fetch_deadline(self):
        assert ApifyMetricFetcher("tok").timeout_s == get_settings().scrape_fetch_timeout_sec
        assert ApifyMetricFetcher("tok", timeout_s=5.0).timeout_s == 5.0

    @pytest.mark.asyncio
    async def test_success(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            return httpx.Response(200, json=[{"id": "1", "playCount": 100, "diggCount": 10}])

        metrics = await _fetcher_with(handler).fetch("https://tiktok.com/@a/video/1", Platform.tiktok)
        assert metrics.views == 100
        assert "clockworks~tiktok-video-scraper" in seen["url"]
        assert "token=tok" in seen["url"]

    @pytest.mark.asyncio
    async def test_missing_token_is_permanent(self):
        with pytest.raises(FetchFailure) as exc:
            await ApifyMetricFetcher(None).fetch("https://tiktok.com/@a/video/1", Platform.tiktok)
        assert not exc.value.retryable

    @pytest.mark.asyncio
    async def test_unknown_platform_is_permanent(self):
        fetcher = _fetcher_with(lambda request: httpx.Response(200, json=[]))
        with pytest.raises(FetchFailure) as exc:
            await fetcher.fetch("https://example.com", Platform.unknown)
        assert not exc.value.retryable

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,retryable", [
        (402, False),
        (401, False),
        (404, False),
        (429, True),
        (502, True),
    ])
    async def test_http_errors(self, status, retryable):
        fetcher = _fetcher_with(lambda request: httpx.Response(status, text="nope"))
        with pytest.raises(FetchFailure) as exc:
            await fetcher.fetch("https://tiktok.com/@a/video/1", Platform.tiktok)
        assert exc.value.retryable is retryable

    @pytest.mark.asyncio
    async def test_network_error_is_retryable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(FetchFailure) as exc:
            await _fetcher_with(handler).fetch("https://tiktok.com/@a/video/1", Platform.tiktok)
        assert exc.value.retryable

    @pytest.mark.asyncio
    async def test_empty_dataset_means_private_or_deleted(self):
        fetcher = _fetcher_with(lambda request: httpx.Response(200, json=[]))
        with pytest.raises(FetchFailure) as exc:
            await fetcher.fetch("https://tiktok.com/@a/video/1", Platform.tiktok)
        assert not exc.value.retryable
        assert "private or deleted" in str(exc.value)

    @pytest.mark.asyncio
    async def test_item_error_is_permanent(self):
        fetcher = _fetcher_with(lambda request: httpx.Response(200, json=[{"error": "not found"}]))
        with pytest.raises(FetchFailure) as exc:
            await fetcher.fetch("https://tiktok.com/@a/video/1", Platform.tiktok)
        assert not exc.value.retryable
