"""Shared fixtures: an in-memory app per test plus a small catalog and cast of users."""

import os
from datetime import datetime, timedelta, timezone

import pytest
from flask import g

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("SCHEDULER_ENABLED", "False")

from speculate import create_app, db  # noqa: E402
from speculate.models import (  # noqa: E402
    Episode,
    PredictionOptionStats,
    Season,
    Show,
    User,
)
from speculate.services import prediction_engine  # noqa: E402

NOW = datetime(2025, 3, 5, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def app():
    app = create_app("testing")
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    # Requests share the test's app context, and with it Flask-Login's cached user
    @app.before_request
    def reset_identity():
        g.pop("_login_user", None)

    return app.test_client()


@pytest.fixture
def now():
    return NOW


def _make_user(external_id, **kwargs):
    user = User(external_id=external_id, handle=external_id, **kwargs)
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def alice(app):
    return _make_user("alice")


@pytest.fixture
def bob(app):
    return _make_user("bob")


@pytest.fixture
def carol(app):
    return _make_user("carol")


@pytest.fixture
def moderator(app):
    return _make_user("mod", is_moderator=True)


@pytest.fixture
def admin(app):
    return _make_user("root", is_admin=True)


@pytest.fixture
def show(app):
    show = Show(title="The Long Night", slug="the-long-night", status="running")
    db.session.add(show)
    db.session.commit()
    return show


@pytest.fixture
def season(show):
    season = Season(show_id=show.id, season_number=1, episode_count=10)
    db.session.add(season)
    db.session.commit()
    return season


@pytest.fixture
def episode(show, season):
    """Airs 12 hours after NOW"""
    episode = Episode(
        show_id=show.id,
        season_id=season.id,
        season_number=1,
        episode_number=1,
        title="Winter Arrives",
        air_date_utc=NOW + timedelta(hours=12),
    )
    db.session.add(episode)
    db.session.commit()
    return episode


@pytest.fixture
def make_prediction(moderator, show, episode):
    """Factory for open yes/no predictions on the episode"""

    def factory(title="Will the hero survive?", kind="binary", options=None,
                lock_at=None, author=None, now=NOW):
        return prediction_engine.create_prediction(
            author=author or moderator,
            show_id=show.id,
            title=title,
            scope="episode",
            kind=kind,
            options=options or ["Yes", "No"],
            lock_at=lock_at,
            episode_id=episode.id,
            now=now,
        )

    return factory


@pytest.fixture
def prediction(make_prediction):
    """Locks at the episode's air time, NOW + 12h"""
    return make_prediction()


@pytest.fixture
def seed_counts():
    """Overwrite an option's live pick counter"""

    def seed(prediction, counts):
        for option_id, count in counts.items():
            row = PredictionOptionStats.query.filter_by(
                prediction_id=prediction.id, option_id=option_id
            ).first()
            row.pick_count = count
        db.session.commit()

    return seed
