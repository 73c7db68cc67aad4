"""
API tests against the FastAPI app (httpx ASGITransport, SQLite per test).
"""

import pytest


async def _create_campaign(client, name="Summer Push"):
    resp = await client.post("/api/campaigns", json={"name": name, "song_title": "Heatwave"})
    assert resp.status_code == 201
    return resp.json()


class TestCampaignRoutes:

    @pytest.mark.asyncio
    async def test_ping(self, client):
        resp = await client.get("/ping")
        assert resp.json() == {"status": "ok"}

    @pytest.mark.asyncio
    async def test_crud(self, client):
        created = await _create_campaign(client)
        cid = created["id"]
        assert created["share_enabled"] is False

        listed = (await client.get("/api/campaigns")).json()
        assert listed[0]["id"] == cid
        assert listed[0]["stats"]["post_count"] == 0

        resp = await client.patch(f"/api/campaigns/{cid}", json={"status": "Paused"})
        assert resp.json()["status"] == "Paused"

        assert (await client.delete(f"/api/campaigns/{cid}")).status_code == 204
        assert (await client.get(f"/api/campaigns/{cid}")).status_code == 404

    @pytest.mark.asyncio
    async def test_blank_name_rejected(self, client):
        resp = await client.post("/api/campaigns", json={"name": " ", "song_title": "x"})
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_engagement_endpoints(self, client):
        cid = (await _create_campaign(client))["id"]
        series = (await client.get(f"/api/campaigns/{cid}/engagement-history", params={"window": "7d", "metric": "views"})).json()
        assert len(series) == 7
        assert set(series[0]) == {"date", "value"}

        full = (await client.get(f"/api/campaigns/{cid}/engagement-history", params={"window": "24h"})).json()
        assert set(full[0]) == {"date", "views", "likes", "comments", "shares", "total_engagement"}

        windows = (await client.get(f"/api/campaigns/{cid}/engagement-windows")).json()
        assert [w["key"] for w in windows] == ["24h", "72h", "7d", "30d", "60d", "90d"]

        bad = await client.get(f"/api/campaigns/{cid}/engagement-history", params={"metric": "saves"})
        assert bad.status_code == 422
        assert bad.json()["field"] == "metric"


class TestPostRoutes:

    @pytest.mark.asyncio
    async def test_add_list_update_delete(self, client):
        cid = (await _create_campaign(client))["id"]
        resp = await client.post(f"/api/campaigns/{cid}/posts", json={"url": "https://www.tiktok.com/@ana/video/1?is_copy_url=1"})
        assert resp.status_code == 201
        post = resp.json()
        assert post["platform"] == "tiktok"

        dup = await client.post(f"/api/campaigns/{cid}/posts", json={"url": "https://tiktok.com/@ana/video/1"})
        assert dup.status_code == 409
        assert dup.json()["existing_id"] == post["id"]

        placeholder = await client.post(f"/api/campaigns/{cid}/posts", json={"creator_name": "cara"})
        assert placeholder.status_code == 201
        assert placeholder.json()["url"].startswith("placeholder://")

        posts = (await client.get(f"/api/campaigns/{cid}/posts")).json()
        assert len(posts) == 2

        resp = await client.patch(f"/api/posts/{post['id']}", json={"metrics": {"views": 10, "likes": 2}})
        assert resp.json()["views"] == 10

        resp = await client.patch(f"/api/posts/{post['id']}", json={"metrics": {"views": -1}})
        assert resp.status_code == 422

        assert (await client.delete(f"/api/posts/{post['id']}")).status_code == 204
        assert (await client.get(f"/api/campaigns/{cid}/posts/duplicates")).json() == []

    @pytest.mark.asyncio
    async def test_post_history(self, client):
        cid = (await _create_campaign(client))["id"]
        post = (await client.post(f"/api/campaigns/{cid}/posts", json={"url": "https://tiktok.com/@ana/video/1"})).json()
        assert (await client.get(f"/api/posts/{post['id']}/history")).json() == []

        await client.patch(f"/api/posts/{post['id']}", json={"metrics": {"views": 40, "likes": 4}})
        snapshots = (await client.get(f"/api/posts/{post['id']}/history")).json()
        assert len(snapshots) == 1
        assert snapshots[0]["views"] == 40
        assert snapshots[0]["source"] == "manual"

        assert (await client.get("/api/posts/999/history")).status_code == 404

    @pytest.mark.asyncio
    async def test_bad_url(self, client):
        cid = (await _create_campaign(client))["id"]
        resp = await client.post(f"/api/campaigns/{cid}/posts", json={"url": "https://example.com/x"})
        assert resp.status_code == 422
        assert resp.json()["field"] == "url"

    @pytest.mark.asyncio
    async def test_import_csv(self, client):
        cid = (await _create_campaign(client))["id"]
        content = b"url,creator\nhttps://tiktok.com/@ana/video/1,ana\n,bob\n"
        resp = await client.post(
            f"/api/campaigns/{cid}/posts/import",
            files={"file": ("creators.csv", content, "text/csv")},
        )
        assert resp.status_code == 200
        assert resp.json()["created"] == 2


class TestScrapeRoutes:

    @pytest.mark.asyncio
    async def test_rescrape_all_and_poll(self, client):
        cid = (await _create_campaign(client))["id"]
        await client.post(f"/api/campaigns/{cid}/posts", json={"url": "https://tiktok.com/@ana/video/1"})
        await client.post(f"/api/campaigns/{cid}/posts", json={"url": "https://tiktok.com/@ana/video/2"})

        resp = await client.post(f"/api/campaigns/{cid}/rescrape-all")
        assert resp.status_code == 202
        job = resp.json()
        assert job["status"] == "queued"
        assert job["total_tasks"] == 2
        assert client.dispatched == [job["id"]]

        again = await client.post(f"/api/campaigns/{cid}/rescrape-all")
        assert again.status_code == 409
        assert again.json()["job_id"] == job["id"]

        active = (await client.get(f"/api/campaigns/{cid}/scrape-jobs/active")).json()
        assert active["id"] == job["id"]

        tasks = (await client.get(f"/api/scrape-jobs/{job['id']}/tasks")).json()
        assert [t["status"] for t in tasks] == ["queued", "queued"]

        assert (await client.get(f"/api/scrape-jobs/{job['id']}")).json()["queued_tasks"] == 2

    @pytest.mark.asyncio
    async def test_rescrape_single_post(self, client):
        cid = (await _create_campaign(client))["id"]
        post = (await client.post(f"/api/campaigns/{cid}/posts", json={"url": "https://tiktok.com/@ana/video/1"})).json()
        resp = await client.post(f"/api/posts/{post['id']}/rescrape")
        assert resp.status_code == 202
        assert resp.json()["total_tasks"] == 1

    @pytest.mark.asyncio
    async def test_nothing_to_scrape(self, client):
        cid = (await _create_campaign(client))["id"]
        resp = await client.post(f"/api/campaigns/{cid}/rescrape-all")
        assert resp.status_code == 422
        assert (await client.get(f"/api/campaigns/{cid}/scrape-jobs/active")).json() is None

    @pytest.mark.asyncio
    async def test_unknown_job(self, client):
        assert (await client.get("/api/scrape-jobs/999")).status_code == 404


class TestSharedRoutes:

    @pytest.mark.asyncio
    async def test_password_checked_every_time(self, client):
        cid = (await _create_campaign(client))["id"]
        post = (await client.post(f"/api/campaigns/{cid}/posts", json={"url": "https://tiktok.com/@ana/video/1"})).json()
        await client.patch(f"/api/posts/{post['id']}", json={"metrics": {"views": 7}})
        await client.post(f"/api/campaigns/{cid}/posts", json={"creator_name": "cara"})

        share = (await client.post(f"/api/campaigns/{cid}/share", json={"password": "letmein"})).json()
        slug = share["share_slug"]
        assert share["share_enabled"] is True

        view = await client.post(f"/api/shared/{slug}", json={"password": "letmein"})
        assert view.status_code == 200
        body = view.json()
        assert body["name"] == "Summer Push"
        assert body["stats"]["total_views"] == 7
        assert [p["id"] for p in body["posts"]] == [post["id"]]
        assert "share_slug" not in body

        denied = await client.post(f"/api/shared/{slug}", json={"password": "wrong"})
        assert denied.status_code == 401

        await client.delete(f"/api/campaigns/{cid}/share")
        gone = await client.post(f"/api/shared/{slug}", json={"password": "letmein"})
        assert gone.status_code == 404

    @pytest.mark.asyncio
    async def test_short_share_password(self, client):
        cid = (await _create_campaign(client))["id"]
        resp = await client.post(f"/api/campaigns/{cid}/share", json={"password": "abc"})
        assert resp.status_code == 422


class TestOpsRoutes:

    @pytest.mark.asyncio
    async def test_health_and_watchdog(self, client):
        health = (await client.get("/api/ops/health")).json()
        assert health["stuck_jobs"] == 0

        report = (await client.post("/api/ops/watchdog")).json()
        assert report["dry_run"] is True
        assert report["jobs_reconciled"] == 0

    @pytest.mark.asyncio
    async def test_tracker_status(self, client):
        status = (await client.get("/api/live-tracker/status")).json()
        assert set(status) >= {"is_running", "is_scheduled", "last_run_at", "next_run_at"}
