from datetime import timedelta

from speculate.models import Episode, Season, Show
from speculate.utils.catalog_sync import CatalogSync, slugify


class FakeResponse:
    def __init__(self, payload, status_code=200):
        self.payload = payload
        self.status_code = status_code
        self.headers = {}

    def json(self):
        return self.payload

    def raise_for_status(self):
        pass


class FakeSession:
    def __init__(self, response):
        self.response = response
        self.headers = {}
        self.requested = []

    def get(self, url, timeout=None):
        self.requested.append(url)
        return self.response


def _feed(now, title="The Long Night"):
    return {
        "shows": [
            {
                "external_id": "tvdb-1",
                "title": title,
                "network": "HBO",
                "status": "running",
                "seasons": [
                    {
                        "external_id": "tvdb-1-s1",
                        "season_number": 1,
                        "episodes": [
                            {
                                "external_id": "tvdb-1-e1",
                                "episode_number": 1,
                                "title": "Pilot",
                                "air_date_utc": (now - timedelta(days=7)).isoformat(),
                            },
                            {
                                "external_id": "tvdb-1-e2",
                                "episode_number": 2,
                                "title": "The Return",
                                "air_date_utc": int((now + timedelta(hours=6)).timestamp() * 1000),
                            },
                        ],
                    }
                ],
            },
            {"title": "No identifier"},
        ]
    }


class TestApplyFeed:
    def test_creates_then_updates(self, app, now):
        sync = CatalogSync(feed_url="https://catalog.example.com/feed.json")

        counts = sync.apply_feed(_feed(now), now=now)
        assert counts == {"shows": 1, "seasons": 1, "episodes": 2, "created": 4}

        show = Show.query.filter_by(external_id="tvdb-1").one()
        assert show.slug == "the-long-night"
        assert Season.query.filter_by(show_id=show.id).one().episode_count == 2

        pilot, second = Episode.query.order_by(Episode.episode_number).all()
        assert pilot.has_aired is True
        assert second.has_aired is False
        assert second.code == "S01E02"

        counts = sync.apply_feed(_feed(now, title="The Longest Night"), now=now)
        assert counts["created"] == 0
        assert Show.query.count() == 1
        assert Show.query.one().title == "The Longest Night"

    def test_mark_aired(self, app, now):
        sync = CatalogSync(feed_url="https://catalog.example.com/feed.json")
        sync.apply_feed(_feed(now), now=now)

        assert sync.mark_aired(now=now) == 0
        assert sync.mark_aired(now=now + timedelta(hours=7)) == 1
        assert Episode.query.filter_by(has_aired=False).count() == 0


class TestSync:
    def test_sync_from_feed(self, app, now):
        session = FakeSession(FakeResponse(_feed(now)))
        success, message = CatalogSync(feed_url="https://catalog.example.com/feed.json", session=session).sync(now=now)

        assert success is True
        assert "1 shows" in message
        assert session.requested == ["https://catalog.example.com/feed.json"]
        assert session.headers["User-Agent"].startswith("Speculate")

    def test_sync_without_feed_url(self, app):
        success, message = CatalogSync(session=FakeSession(None)).sync()
        assert success is False
        assert "CATALOG_FEED_URL" in message

    def test_malformed_feed(self, app):
        session = FakeSession(FakeResponse({"series": []}))
        success, _ = CatalogSync(feed_url="https://catalog.example.com/feed.json", session=session).sync()
        assert success is False


def test_slugify():
    assert slugify("Game of Thrones: Season 8!") == "game-of-thrones-season-8"
    assert slugify("") == "show"
