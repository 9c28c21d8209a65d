"""
Tests for feed routes.
"""

from datetime import datetime, timedelta

from .fakes import FEED_URL

OTHER_URL = "https://other.example.com/rss"


class TestListFeeds:
    """Tests for GET /feeds endpoint."""

    def test_list_feeds_empty(self, client):
        """Should return empty list when no feeds."""
        response = client.get("/feeds")
        assert response.status_code == 200
        assert response.json() == []

    def test_list_feeds_returns_feeds(self, client_with_data):
        """Should return list of feeds with folder names."""
        client, data = client_with_data
        response = client.get("/feeds")
        assert response.status_code == 200
        feeds = response.json()
        assert len(feeds) == 1
        assert feeds[0]["id"] == data["feed_id"]
        assert feeds[0]["folder"] == "Tech"
        assert feeds[0]["article_count"] == 2

    def test_list_feeds_has_schedule_fields(self, client_with_data):
        """Each feed should expose its schedule and health."""
        client, _ = client_with_data
        feed = client.get("/feeds").json()[0]
        for key in ("refresh_interval_minutes", "next_fetch_at", "last_fetched_at",
                    "error_count", "last_error", "paused"):
            assert key in feed
        assert feed["paused"] is False


class TestAddFeed:
    """Tests for POST /feeds endpoint."""

    def test_add_feed(self, client):
        """Should subscribe and run the first refresh in the background."""
        response = client.post("/feeds", json={"url": FEED_URL, "folder": "News"})
        assert response.status_code == 200
        feed = response.json()
        assert feed["title"] == "Example Feed"
        assert feed["type"] == "rss"
        assert feed["folder"] == "News"
        assert feed["site_url"] == "https://example.com/"

        articles = client.get(f"/feeds/{feed['id']}/articles").json()
        assert len(articles) == 2

    def test_add_feed_custom_title(self, client):
        response = client.post("/feeds", json={"url": FEED_URL, "title": "Mine"})
        assert response.json()["title"] == "Mine"

    def test_add_feed_duplicate(self, client_with_data):
        """Should reject a feed that is already subscribed."""
        client, _ = client_with_data
        response = client.post("/feeds", json={"url": FEED_URL})
        assert response.status_code == 409

    def test_add_feed_unreachable(self, client):
        """Should reject a URL that does not serve a feed."""
        response = client.post("/feeds", json={"url": OTHER_URL})
        assert response.status_code == 400
        assert response.json()["detail"].startswith("Invalid feed URL")

    def test_add_feed_invalid_url(self, client):
        """Should reject invalid feed URL."""
        response = client.post("/feeds", json={"url": "not-a-valid-url"})
        assert response.status_code == 400

    def test_add_feed_private_address(self, client):
        response = client.post("/feeds", json={"url": "http://192.168.1.1/feed.xml"})
        assert response.status_code == 400

    def test_add_feed_missing_url(self, client):
        """Should require URL."""
        response = client.post("/feeds", json={})
        assert response.status_code == 422

    def test_resubscribe_restores_feed(self, client_with_data):
        """Should restore an unsubscribed feed instead of duplicating it."""
        client, data = client_with_data
        client.delete(f"/feeds/{data['feed_id']}")

        response = client.post("/feeds", json={"url": FEED_URL})

        assert response.status_code == 200
        assert response.json()["id"] == data["feed_id"]
        assert len(client.get("/feeds").json()) == 1


class TestGetAndUpdateFeed:
    """Tests for GET/PUT /feeds/{feed_id}."""

    def test_get_feed(self, client_with_data):
        client, data = client_with_data
        response = client.get(f"/feeds/{data['feed_id']}")
        assert response.status_code == 200
        assert response.json()["title"] == "Example Feed"

    def test_get_feed_not_found(self, client):
        response = client.get("/feeds/99999")
        assert response.status_code == 404
        assert response.json()["detail"] == "Feed not found"

    def test_update_title_and_folder(self, client_with_data):
        client, data = client_with_data
        response = client.put(f"/feeds/{data['feed_id']}", json={"title": "Renamed", "folder": "Reading"})
        assert response.status_code == 200
        feed = response.json()
        assert feed["title"] == "Renamed"
        assert feed["folder"] == "Reading"

    def test_clear_folder(self, client_with_data):
        client, data = client_with_data
        response = client.put(f"/feeds/{data['feed_id']}", json={"folder": ""})
        assert response.json()["folder_id"] is None

    def test_interval_change_before_first_fetch(self, client_with_data):
        """A never-fetched feed stays due immediately."""
        client, data = client_with_data
        response = client.put(f"/feeds/{data['feed_id']}", json={"refresh_interval_minutes": 120})
        feed = response.json()
        assert feed["refresh_interval_minutes"] == 120
        assert feed["next_fetch_at"] is None

    def test_interval_change_reschedules(self, client_with_data):
        """next_fetch_at is re-derived from the last fetch."""
        client, data = client_with_data
        client.post(f"/feeds/{data['feed_id']}/refresh")

        feed = client.put(f"/feeds/{data['feed_id']}", json={"refresh_interval_minutes": 120}).json()

        last = datetime.fromisoformat(feed["last_fetched_at"])
        assert datetime.fromisoformat(feed["next_fetch_at"]) == last + timedelta(minutes=120)

    def test_interval_out_of_range(self, client_with_data):
        client, data = client_with_data
        response = client.put(f"/feeds/{data['feed_id']}", json={"refresh_interval_minutes": 0})
        assert response.status_code == 422


class TestDeleteFeed:
    """Tests for DELETE /feeds/{feed_id} endpoint."""

    def test_delete_feed(self, client_with_data):
        """Should soft delete a feed."""
        client, data = client_with_data
        response = client.delete(f"/feeds/{data['feed_id']}")
        assert response.status_code == 200
        assert response.json() == {"success": True}
        assert client.get("/feeds").json() == []
        assert client.get(f"/feeds/{data['feed_id']}").status_code == 404

    def test_delete_nonexistent_feed(self, client):
        response = client.delete("/feeds/99999")
        assert response.status_code == 404


class TestPauseResume:
    """Tests for pausing and resuming feeds."""

    def test_pause_and_resume(self, client_with_data):
        client, data = client_with_data
        feed_id = data["feed_id"]

        assert client.post(f"/feeds/{feed_id}/pause").json()["paused"] is True
        assert client.post(f"/feeds/{feed_id}/pause").json()["paused"] is True
        assert client.post(f"/feeds/{feed_id}/resume").json()["paused"] is False

    def test_pause_nonexistent(self, client):
        assert client.post("/feeds/99999/pause").status_code == 404


class TestFeedArticles:
    """Tests for GET /feeds/{feed_id}/articles."""

    def test_list_articles(self, client_with_data):
        client, data = client_with_data
        response = client.get(f"/feeds/{data['feed_id']}/articles")
        assert response.status_code == 200
        assert {a["guid"] for a in response.json()} == {"a-1", "a-2"}

    def test_pagination(self, client_with_data):
        client, data = client_with_data
        response = client.get(f"/feeds/{data['feed_id']}/articles", params={"limit": 1})
        assert len(response.json()) == 1

    def test_unknown_feed(self, client):
        assert client.get("/feeds/99999/articles").status_code == 404


class TestRefreshFeed:
    """Tests for POST /feeds/{feed_id}/refresh."""

    def test_refresh_success(self, client_with_data):
        client, data = client_with_data
        response = client.post(f"/feeds/{data['feed_id']}/refresh")
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["new_articles"] == 2
        assert body["next_fetch_at"] is not None

        again = client.post(f"/feeds/{data['feed_id']}/refresh").json()
        assert again["new_articles"] == 0

    def test_refresh_failure_structured(self, client, test_db):
        feed_id = test_db.add_feed(OTHER_URL, "Other")
        response = client.post(f"/feeds/{feed_id}/refresh")
        assert response.status_code == 500
        assert response.json() == {
            "error": "Failed to refresh feed",
            "details": "[fetch] Failed to fetch feed: 404 Not Found",
        }
        feed = client.get(f"/feeds/{feed_id}").json()
        assert feed["error_count"] == 1
        assert feed["last_error"].startswith("[fetch]")

    def test_refresh_not_found(self, client):
        assert client.post("/feeds/99999/refresh").status_code == 404

    def test_refresh_in_flight(self, client_with_data, app_state):
        client, data = client_with_data
        app_state.scheduler.state.in_flight.add(data["feed_id"])
        response = client.post(f"/feeds/{data['feed_id']}/refresh")
        assert response.status_code == 409


class TestExportOPML:
    """Tests for GET /feeds/export-opml."""

    def test_export(self, client_with_data):
        client, _ = client_with_data
        response = client.get("/feeds/export-opml")
        assert response.status_code == 200
        body = response.json()
        assert body["feed_count"] == 1
        assert f'xmlUrl="{FEED_URL}"' in body["opml"]
        assert 'text="Tech"' in body["opml"]

    def test_export_empty(self, client):
        body = client.get("/feeds/export-opml").json()
        assert body["feed_count"] == 0
        assert "<opml" in body["opml"]
