"""
Leaderboard aggregation.

Snapshots are recomputed by scheduled jobs and stored per (kind, period_key):

    global  all_time     lifetime points of every user
    weekly  YYYY-Www     ledger points over the trailing 7 days
    daily   YYYY-MM-DD   ledger points over the trailing day

Ties are broken by user id (lower first) so a recompute over the same data
always yields the same ranking.
"""

import logging
from datetime import timedelta

from flask import current_app

from speculate import cache, db
from speculate.errors import ValidationError
from speculate.models import Leaderboard, PointsLedgerEntry, User, UserStats
from speculate.models.leaderboard import LEADERBOARD_KINDS
from speculate.utils.cache_utils import (
    LEADERBOARD_CACHE_TIMEOUT,
    invalidate_leaderboard_cache,
    leaderboard_cache_key,
)
from speculate.utils.timezone_utils import as_utc, iso_week_key, utc_now, utc_today

logger = logging.getLogger(__name__)

GLOBAL_PERIOD_KEY = "all_time"

WINDOWS = {
    "daily": timedelta(days=1),
    "weekly": timedelta(days=7),
}


def _validate_kind(kind):
    if kind not in LEADERBOARD_KINDS:
        raise ValidationError(
            f"Unknown leaderboard kind: {kind}", details={"kind": kind}
        )


def _size():
    return current_app.config.get("LEADERBOARD_SIZE", 100)


def period_key_for(kind, now=None):
    """Period key of the snapshot a job running at `now` writes"""
    _validate_kind(kind)
    now = as_utc(now) if now else utc_now()

    if kind == "global":
        return GLOBAL_PERIOD_KEY
    if kind == "weekly":
        return iso_week_key(now)
    return utc_today(now)


def _rank(rows):
    """rows: [(user_id, score, rating)] already ordered"""
    return [
        {"user_id": user_id, "rank": rank, "score": int(score), "rating": round(rating or 0.0, 4)}
        for rank, (user_id, score, rating) in enumerate(rows, start=1)
    ]


def compute_global_entries(size=None):
    size = size or _size()
    rows = (
        db.session.query(UserStats.user_id, UserStats.lifetime_points, UserStats.accuracy)
        .order_by(UserStats.lifetime_points.desc(), UserStats.user_id.asc())
        .limit(size)
        .all()
    )
    return _rank(rows)


def compute_window_entries(kind, now=None, size=None):
    """Rank users by ledger points within the trailing window (negatives included)"""
    size = size or _size()
    now = as_utc(now) if now else utc_now()
    since = now - WINDOWS[kind]

    score = db.func.sum(PointsLedgerEntry.points)
    totals = (
        db.session.query(PointsLedgerEntry.user_id, score.label("score"))
        .filter(PointsLedgerEntry.created_at >= since, PointsLedgerEntry.created_at <= now)
        .group_by(PointsLedgerEntry.user_id)
        .order_by(score.desc(), PointsLedgerEntry.user_id.asc())
        .limit(size)
        .all()
    )

    user_ids = [user_id for user_id, _ in totals]
    accuracy = {}
    if user_ids:
        accuracy = dict(
            db.session.query(UserStats.user_id, UserStats.accuracy)
            .filter(UserStats.user_id.in_(user_ids))
            .all()
        )

    return _rank([(user_id, total, accuracy.get(user_id, 0.0)) for user_id, total in totals])


def compute_leaderboard(kind, now=None):
    """Recompute and store the snapshot for the current period of `kind`"""
    _validate_kind(kind)
    now = as_utc(now) if now else utc_now()
    period_key = period_key_for(kind, now)

    if kind == "global":
        entries = compute_global_entries()
    else:
        entries = compute_window_entries(kind, now)

    try:
        board = Leaderboard.upsert(kind, period_key, entries, now=now)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Error computing {kind} leaderboard: {e}", exc_info=True)
        raise

    invalidate_leaderboard_cache(kind, period_key)
    return board


def compute_all_leaderboards(now=None):
    """Daily job: refresh the global, weekly and daily snapshots"""
    now = as_utc(now) if now else utc_now()
    results = {}
    for kind in ("global", "weekly", "daily"):
        board = compute_leaderboard(kind, now)
        results[kind] = {"period_key": board.period_key, "entries": len(board.entries)}
    logger.info(f"Leaderboards computed: {results}")
    return results


def get_leaderboard(kind, period_key=None):
    """Stored snapshot for a period (latest of the kind when no key is given)"""
    _validate_kind(kind)

    cache_key = leaderboard_cache_key(kind, period_key)
    cached = cache.get(cache_key)
    if cached is not None:
        return cached

    if period_key:
        board = Leaderboard.query.filter_by(kind=kind, period_key=period_key).first()
    else:
        board = Leaderboard.latest(kind)

    if board is None:
        return {
            "kind": kind,
            "period_key": period_key or period_key_for(kind),
            "entries": [],
            "as_of": None,
        }

    result = board.to_dict()

    user_ids = [entry["user_id"] for entry in result["entries"]]
    if user_ids:
        users = {u.id: u for u in User.query.filter(User.id.in_(user_ids)).all()}
        result["entries"] = [
            dict(entry, user=users[entry["user_id"]].to_dict() if entry["user_id"] in users else None)
            for entry in result["entries"]
        ]

    cache.set(cache_key, result, timeout=LEADERBOARD_CACHE_TIMEOUT)
    return result
