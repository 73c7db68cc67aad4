"""
Tests for the post registry.

Tests cover:
- Adding posts and duplicate detection by post key
- Placeholder posts and the placeholder/schedulable predicates
- In-memory dedupe
- Manual edits and the history they leave
- CSV/XLSX import
"""

import io
from datetime import datetime, timezone

import pytest
from openpyxl import Workbook

from campaign_tracker.errors import DuplicateResourceError, NotFoundError, ValidationError
from campaign_tracker.models import Platform, ScrapeStatus, WorkflowStatus
from campaign_tracker.services import history, post_registry
from campaign_tracker.services.post_registry import (
    dedupe,
    dedupe_key,
    is_placeholder,
    is_schedulable,
    is_scraped,
)
from campaign_tracker.services.urls import placeholder_url


class TestPredicates:

    def test_synthetic_url_is_placeholder(self):
        assert is_placeholder({"url": placeholder_url(), "platform": "tiktok", "views": 10})

    def test_missing_platform_is_placeholder(self):
        assert is_placeholder({"url": "https://tiktok.com/@a/video/1", "platform": "unknown", "views": 10})
        assert is_placeholder({"url": "https://tiktok.com/@a/video/1", "views": 10})

    def test_pending_with_zero_metrics_is_placeholder(self):
        post = {"url": "https://tiktok.com/@a/video/1", "platform": "tiktok", "workflow_status": "pending"}
        assert is_placeholder(post)
        assert is_placeholder({**post, "workflow_status": " Pending "})
        assert is_placeholder({**post, "workflow_status": WorkflowStatus.pending})

    def test_unrecognized_status_is_not_placeholder(self):
        post = {"url": "https://tiktok.com/@a/video/1", "platform": "tiktok", "workflow_status": "bogus"}
        assert not is_placeholder(post)
        assert not is_placeholder({**post, "workflow_status": None})

    def test_measured_post_is_not_placeholder(self):
        post = {
            "url": "https://tiktok.com/@a/video/1",
            "platform": "tiktok",
            "workflow_status": "pending",
            "views": 3,
        }
        assert not is_placeholder(post)
        assert not is_placeholder({**post, "views": 0, "workflow_status": "active"})

    def test_schedulable_needs_real_url_and_platform(self):
        assert is_schedulable({"url": "https://tiktok.com/@a/video/1", "platform": "tiktok"})
        assert not is_schedulable({"url": placeholder_url(), "platform": "tiktok"})
        assert not is_schedulable({"url": "https://tiktok.com/@a/video/1", "platform": Platform.unknown})
        assert not is_schedulable({"url": "", "platform": "tiktok"})

    def test_is_scraped(self):
        assert is_scraped({"is_scraped": True})
        assert is_scraped({"scrape_status": "scraped"})
        assert is_scraped({"last_scraped_at": "2026-03-01T10:00:00Z"})
        assert is_scraped({"last_scraped_at": datetime(2026, 3, 1, tzinfo=timezone.utc)})
        assert not is_scraped({"last_scraped_at": "yesterday-ish"})
        assert not is_scraped({})


class TestDedupe:

    def test_first_occurrence_wins_in_order(self):
        rows = [
            {"url": "https://a", "creator_name": "one"},
            {"url": "https://b", "creator_name": "two"},
            {"url": "https://a", "creator_name": "three"},
        ]
        assert [r["creator_name"] for r in dedupe(rows)] == ["one", "two"]

    def test_key_precedence(self):
        assert dedupe_key({"external_post_id": "99", "post_key": "k", "url": "u"}) == "id:99"
        assert dedupe_key({"post_key": "k", "url": "u"}) == "key:k"
        assert dedupe_key({"post_link": "u"}) == "url:u"
        assert dedupe_key({"platform": "tiktok", "creator_name": "ana"}) == "creator:tiktok:ana"

    def test_creator_rows_without_links(self):
        rows = [
            {"platform": "tiktok", "creator_name": "ana"},
            {"platform": "instagram", "creator_name": "ana"},
            {"platform": "tiktok", "creator_name": "ana"},
        ]
        assert len(dedupe(rows)) == 2

    def test_idempotent_over_mixed_batch(self):
        rows = [
            {"external_post_id": "99", "url": "https://a"},
            {"external_post_id": "99", "url": "https://other"},
            {"post_key": "tiktok:https://b", "url": "https://b"},
            {"post_key": "tiktok:https://b"},
            {"url": "https://c"},
            {"post_link": "https://c"},
            {"platform": "tiktok", "creator_name": "ana"},
            {"platform": "tiktok", "creator_name": "ana"},
            {"platform": "youtube", "creator_name": "ana"},
        ]
        once = dedupe(rows)
        assert len(once) == 5
        assert dedupe(once) == once
        assert len({dedupe_key(row) for row in once}) == len(once)


class TestAddPost:

    @pytest.mark.asyncio
    async def test_add_post_normalizes(self, session, campaign):
        post = await post_registry.add_post(
            session, campaign.id, " https://www.TikTok.com/@ana/video/555?is_from_webapp=1 ", creator_name=" ana "
        )
        assert post.platform == "tiktok"
        assert post.canonical_url == "https://tiktok.com/@ana/video/555"
        assert post.post_key == "tiktok:https://tiktok.com/@ana/video/555"
        assert post.external_post_id == "555"
        assert post.creator_name == "ana"
        assert post.workflow_status == "pending"
        assert post.scrape_status == ScrapeStatus.pending.value
        assert (post.views, post.likes, post.comments, post.shares) == (0, 0, 0, 0)

    @pytest.mark.asyncio
    async def test_duplicate_rejected_with_existing_id(self, session, campaign):
        first = await post_registry.add_post(session, campaign.id, "https://tiktok.com/@ana/video/555")
        with pytest.raises(DuplicateResourceError) as exc:
            await post_registry.add_post(session, campaign.id, "https://www.tiktok.com/@ana/video/555/?utm_source=x")
        assert exc.value.existing_id == first.id

    @pytest.mark.asyncio
    async def test_same_url_allowed_in_another_campaign(self, session, campaign):
        from campaign_tracker.services.campaigns import create_campaign

        other = await create_campaign(session, name="Other", song_title="B-side")
        await post_registry.add_post(session, campaign.id, "https://tiktok.com/@ana/video/555")
        post = await post_registry.add_post(session, other.id, "https://tiktok.com/@ana/video/555")
        assert post.campaign_id == other.id

    @pytest.mark.asyncio
    async def test_unknown_campaign(self, session):
        with pytest.raises(NotFoundError):
            await post_registry.add_post(session, 999, "https://tiktok.com/@ana/video/555")

    @pytest.mark.asyncio
    async def test_malformed_url(self, session, campaign):
        with pytest.raises(ValidationError):
            await post_registry.add_post(session, campaign.id, "not a url")

    @pytest.mark.asyncio
    async def test_placeholder_posts_never_collide(self, session, campaign):
        a = await post_registry.add_placeholder_post(session, campaign.id, creator_name="ana")
        b = await post_registry.add_placeholder_post(session, campaign.id, creator_name="ana", platform_hint="TikTok")
        assert a.post_key != b.post_key
        assert a.platform == "unknown"
        assert b.platform == "tiktok"
        assert is_placeholder(a) and is_placeholder(b)
        assert not is_schedulable(a) and not is_schedulable(b)

    @pytest.mark.asyncio
    async def test_list_posts_newest_first(self, session, campaign):
        first = await post_registry.add_post(session, campaign.id, "https://tiktok.com/@ana/video/1")
        second = await post_registry.add_post(session, campaign.id, "https://tiktok.com/@ana/video/2")
        posts = await post_registry.list_posts(session, campaign.id)
        assert [p.id for p in posts] == [second.id, first.id]
        assert await post_registry.find_duplicate_keys(session, campaign.id) == []


class TestUpdatePost:

    @pytest.mark.asyncio
    async def test_manual_metrics_are_ledgered(self, session, campaign):
        post = await post_registry.add_post(session, campaign.id, "https://tiktok.com/@ana/video/1")
        updated = await post_registry.update_post(session, post.id, metrics={"views": 500, "likes": 40})
        assert (updated.views, updated.likes, updated.comments) == (500, 40, 0)
        assert updated.last_scraped_at is not None

        snapshots = await history.list_post_history(session, post.id)
        assert len(snapshots) == 1
        assert snapshots[0].source == "manual"
        assert snapshots[0].views == 500
        assert snapshots[0].total_engagement == 40

    @pytest.mark.asyncio
    async def test_negative_metrics_rejected(self, session, campaign):
        post = await post_registry.add_post(session, campaign.id, "https://tiktok.com/@ana/video/1")
        with pytest.raises(ValidationError):
            await post_registry.update_post(session, post.id, metrics={"views": -1})

    @pytest.mark.asyncio
    async def test_workflow_status_is_canonicalized(self, session, campaign):
        post = await post_registry.add_post(session, campaign.id, "https://tiktok.com/@ana/video/1")
        updated = await post_registry.update_post(session, post.id, workflow_status="  ACTIVE ")
        assert updated.workflow_status == "active"

    @pytest.mark.asyncio
    async def test_placeholder_gets_real_url(self, session, campaign):
        post = await post_registry.add_placeholder_post(session, campaign.id, creator_name="ana")
        updated = await post_registry.update_post(session, post.id, url="https://www.instagram.com/reel/AbC123/")
        assert updated.platform == "instagram"
        assert updated.post_key == "instagram:https://instagram.com/reel/AbC123"
        assert is_schedulable(updated)

    @pytest.mark.asyncio
    async def test_url_change_to_existing_key_rejected(self, session, campaign):
        taken = await post_registry.add_post(session, campaign.id, "https://tiktok.com/@ana/video/1")
        post = await post_registry.add_post(session, campaign.id, "https://tiktok.com/@ana/video/2")
        with pytest.raises(DuplicateResourceError) as exc:
            await post_registry.update_post(session, post.id, url="https://tiktok.com/@ana/video/1/")
        assert exc.value.existing_id == taken.id

    @pytest.mark.asyncio
    async def test_delete_post_removes_history(self, session, campaign):
        post = await post_registry.add_post(session, campaign.id, "https://tiktok.com/@ana/video/1")
        await post_registry.update_post(session, post.id, metrics={"views": 1})
        await post_registry.delete_post(session, post.id)
        with pytest.raises(NotFoundError):
            await post_registry.get_post(session, post.id)
        assert await history.list_post_history(session, post.id) == []


class TestImport:

    def test_parse_csv_with_header_aliases(self):
        content = (
            "\ufeffPost URL,Creator,Platform,Status\n"
            "https://tiktok.com/@ana/video/1,ana,TikTok,active\n"
            ",bob,Instagram,\n"
            "\n"
        ).encode("utf-8")
        rows = post_registry.parse_import_file("creators.csv", content)
        assert rows == [
            {"url": "https://tiktok.com/@ana/video/1", "creator_name": "ana", "platform": "TikTok", "workflow_status": "active"},
            {"creator_name": "bob", "platform": "Instagram"},
        ]

    def test_parse_xlsx(self):
        wb = Workbook()
        ws = wb.active
        ws.append(["link", "handle"])
        ws.append(["https://youtu.be/abc", "cara"])
        buf = io.BytesIO()
        wb.save(buf)
        rows = post_registry.parse_import_file("sheet.xlsx", buf.getvalue())
        assert rows == [{"url": "https://youtu.be/abc", "creator_name": "cara"}]

    def test_unreadable_xlsx(self):
        with pytest.raises(ValidationError):
            post_registry.parse_import_file("sheet.xlsx", b"definitely not a zip")

    def test_missing_columns(self):
        with pytest.raises(ValidationError):
            post_registry.parse_import_file("x.csv", b"foo,bar\n1,2\n")

    @pytest.mark.asyncio
    async def test_import_posts(self, session, campaign):
        await post_registry.add_post(session, campaign.id, "https://tiktok.com/@ana/video/1")
        rows = [
            {"url": "https://tiktok.com/@ana/video/1?is_copy_url=1"},
            {"url": "https://tiktok.com/@bob/video/2", "creator_name": "bob"},
            {"url": "https://tiktok.com/@bob/video/2", "creator_name": "bob again"},
            {"creator_name": "cara", "platform": "instagram"},
            {"url": "https://example.com/nope"},
            {"platform": "tiktok"},
        ]
        result = await post_registry.import_posts(session, campaign.id, rows)
        assert result["created"] == 2
        assert result["skipped"] == 2
        assert result["errors"] == 2
        posts = await post_registry.list_posts(session, campaign.id)
        assert len(posts) == 3
        assert sum(1 for p in posts if is_placeholder(p) and p.creator_name == "cara") == 1
