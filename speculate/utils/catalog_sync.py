"""
Catalog synchronization.

Shows, seasons and episodes come from an upstream JSON feed and are upserted
by external id. The feed looks like::

    {"shows": [{"external_id": "...", "title": "...", "network": "...",
                "status": "running", "first_air_year": 2019,
                "seasons": [{"external_id": "...", "season_number": 1,
                             "episodes": [{"external_id": "...",
                                           "episode_number": 1,
                                           "title": "...",
                                           "air_date_utc": "2025-03-01T02:00:00Z",
                                           "runtime_minutes": 55}]}]}]}

`air_date_utc` may also be epoch milliseconds.
"""

import logging
import re
import time
from functools import wraps

import requests
from flask import current_app

from speculate import db
from speculate.models import Episode, Season, Show
from speculate.models.show import SHOW_STATUSES
from speculate.utils.cache_utils import invalidate_model_cache
from speculate.utils.timezone_utils import as_utc, parse_timestamp, utc_now

logger = logging.getLogger(__name__)


def rate_limit_decorator(max_retries=3, base_delay=1.0, backoff_factor=2.0):
    """
    Decorator to handle feed rate limiting with exponential backoff
    """

    def decorator(func):
        @wraps(func)
        def wrapper(self, *args, **kwargs):
            for attempt in range(max_retries):
                try:
                    response = func(self, *args, **kwargs)

                    if response.status_code == 429:  # Too Many Requests
                        retry_after = int(
                            response.headers.get(
                                "Retry-After", base_delay * (backoff_factor**attempt)
                            )
                        )
                        logger.warning(
                            f"Rate limited. Waiting {retry_after}s before retry {attempt + 1}/{max_retries}"
                        )
                        time.sleep(retry_after)
                        continue
                    if response.status_code >= 500:  # Server errors
                        delay = base_delay * (backoff_factor**attempt)
                        logger.warning(
                            f"Server error {response.status_code}. Waiting {delay}s before retry {attempt + 1}/{max_retries}"
                        )
                        time.sleep(delay)
                        continue

                    return response

                except requests.exceptions.RequestException as e:
                    delay = base_delay * (backoff_factor**attempt)
                    logger.warning(
                        f"Request failed: {e}. Waiting {delay}s before retry {attempt + 1}/{max_retries}"
                    )
                    if attempt < max_retries - 1:
                        time.sleep(delay)
                    else:
                        raise

            raise requests.exceptions.RetryError(f"Max retries ({max_retries}) exceeded")

        return wrapper

    return decorator


def slugify(text):
    return re.sub(r"[^a-z0-9]+", "-", (text or "").lower()).strip("-") or "show"


class CatalogSync:
    """Pulls the show catalog feed and upserts it into the database"""

    def __init__(self, feed_url=None, session=None):
        self.feed_url = feed_url or current_app.config.get("CATALOG_FEED_URL")
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": "Speculate-Catalog/1.0"})

    @rate_limit_decorator(max_retries=3, base_delay=2.0)
    def _make_request(self, url):
        return self.session.get(url, timeout=30)

    def fetch_feed(self):
        """Download and decode the catalog feed"""
        if not self.feed_url:
            raise ValueError("CATALOG_FEED_URL is not configured")

        response = self._make_request(self.feed_url)
        response.raise_for_status()
        payload = response.json()

        if not isinstance(payload, dict) or not isinstance(payload.get("shows"), list):
            raise ValueError("Catalog feed must be an object with a 'shows' list")
        return payload

    def _upsert_show(self, data):
        external_id = str(data["external_id"])
        show = Show.query.filter_by(external_id=external_id).first()
        created = show is None

        if created:
            slug = data.get("slug") or slugify(data.get("title"))
            if Show.query.filter_by(slug=slug).first():
                slug = f"{slug}-{external_id}"
            show = Show(external_id=external_id, slug=slug, predictions_count=0)
            db.session.add(show)

        show.title = data.get("title") or show.title or external_id
        show.overview = data.get("overview", show.overview)
        show.network = data.get("network", show.network)
        show.first_air_year = data.get("first_air_year", show.first_air_year)
        status = data.get("status") or show.status or "unknown"
        show.status = status if status in SHOW_STATUSES else "unknown"

        return show, created

    def _upsert_season(self, show, data):
        season_number = int(data["season_number"])
        season = Season.query.filter_by(show_id=show.id, season_number=season_number).first()
        created = season is None

        if created:
            season = Season(show_id=show.id, season_number=season_number)
            db.session.add(season)

        if data.get("external_id"):
            season.external_id = str(data["external_id"])
        season.title = data.get("title", season.title)
        episodes = data.get("episodes") or []
        season.episode_count = data.get("episode_count") or len(episodes) or season.episode_count

        return season, created

    def _upsert_episode(self, show, season, data, now):
        episode_number = int(data["episode_number"])
        episode = Episode.query.filter_by(
            show_id=show.id,
            season_number=season.season_number,
            episode_number=episode_number,
        ).first()
        created = episode is None

        if created:
            episode = Episode(
                show_id=show.id,
                season_id=season.id,
                season_number=season.season_number,
                episode_number=episode_number,
            )
            db.session.add(episode)

        if data.get("external_id"):
            episode.external_id = str(data["external_id"])
        episode.title = data.get("title") or episode.title or f"Episode {episode_number}"
        episode.overview = data.get("overview", episode.overview)
        episode.runtime_minutes = data.get("runtime_minutes", episode.runtime_minutes)

        if "air_date_utc" in data:
            episode.air_date_utc = parse_timestamp(data["air_date_utc"])
        episode.has_aired = episode.is_aired(now)

        return episode, created

    def apply_feed(self, payload, now=None):
        """Upsert every show, season and episode in a decoded feed"""
        now = as_utc(now) if now else utc_now()
        counts = {"shows": 0, "seasons": 0, "episodes": 0, "created": 0}

        try:
            for show_data in payload.get("shows", []):
                if not show_data.get("external_id"):
                    logger.warning(f"Skipping show without external_id: {show_data.get('title')}")
                    continue

                show, created = self._upsert_show(show_data)
                db.session.flush()
                counts["shows"] += 1
                counts["created"] += int(created)

                for season_data in show_data.get("seasons") or []:
                    season, created = self._upsert_season(show, season_data)
                    db.session.flush()
                    counts["seasons"] += 1
                    counts["created"] += int(created)

                    for episode_data in season_data.get("episodes") or []:
                        _, created = self._upsert_episode(show, season, episode_data, now)
                        counts["episodes"] += 1
                        counts["created"] += int(created)

            db.session.commit()
        except Exception as e:
            db.session.rollback()
            logger.error(f"Error applying catalog feed: {e}", exc_info=True)
            raise

        invalidate_model_cache("Show")
        logger.info(
            f"Catalog applied: {counts['shows']} shows, {counts['seasons']} seasons, "
            f"{counts['episodes']} episodes ({counts['created']} new)"
        )
        return counts

    def mark_aired(self, now=None):
        """Flag episodes whose air time has passed"""
        now = as_utc(now) if now else utc_now()

        episodes = Episode.query.filter(
            Episode.has_aired.is_(False),
            Episode.air_date_utc.isnot(None),
            Episode.air_date_utc <= now,
        ).all()

        for episode in episodes:
            episode.has_aired = True

        if episodes:
            db.session.commit()
            logger.info(f"Marked {len(episodes)} episodes as aired")
        return len(episodes)

    def sync(self, now=None):
        """Fetch and apply the feed

        Returns:
            Tuple of (success: bool, message: str)
        """
        try:
            payload = self.fetch_feed()
            counts = self.apply_feed(payload, now=now)
            self.mark_aired(now=now)
            return True, (
                f"Synced {counts['shows']} shows, {counts['seasons']} seasons, "
                f"{counts['episodes']} episodes"
            )
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.error(f"Catalog sync failed: {e}")
            return False, f"Catalog sync failed: {e}"
