"""
User stats aggregation.

UserStats and UserShowStats are denormalized views over picks and the points
ledger. They are maintained incrementally by two queued tasks and can be
rebuilt from scratch with `rebuild_user_stats`.

Both incremental handlers are safe to run more than once: what has already
been applied is tracked on the pick itself, so a redelivered task is a no-op
and a corrected resolution only applies the difference.
"""

import logging

from speculate import db
from speculate.models import (
    PointsLedgerEntry,
    Prediction,
    PredictionPick,
    UserShowStats,
    UserStats,
)
from speculate.models.points_ledger import REASON_RESOLUTION_CORRECTION
from speculate.models.prediction import STATE_RESOLVED
from speculate.services.task_queue import task_queue
from speculate.utils.timezone_utils import (
    parse_day,
    previous_day,
    reference_today,
)

logger = logging.getLogger(__name__)


def _valid_day(value):
    if not value:
        return None
    try:
        parse_day(value)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring malformed client date: {value!r}")
        return None
    return value


def _locked_pick(user_id, prediction_id):
    """The user's pick, row-locked so redelivered tasks apply it once"""
    return (
        PredictionPick.query.filter_by(user_id=user_id, prediction_id=prediction_id)
        .with_for_update()
        .populate_existing()
        .first()
    )


def _activity_day(pick, client_local_date=None):
    """Calendar day a pick counts towards: the client's date, else the reference day"""
    return (
        _valid_day(client_local_date)
        or _valid_day(pick.client_local_date)
        or reference_today(pick.picked_at)
    )


def advance_streak(stats, today):
    """Move the activity streak forward to `today` (YYYY-MM-DD)"""
    last = stats.last_active_day

    if last == today:
        return
    if last is not None and today < last:
        # Late delivery for an earlier day; streak already counts past it
        return

    if last is not None and last == previous_day(today):
        stats.current_streak = (stats.current_streak or 0) + 1
    else:
        stats.current_streak = 1

    stats.best_streak = max(stats.best_streak or 0, stats.current_streak)
    stats.last_active_day = today


@task_queue.register("update_stats_after_pick")
def update_stats_after_pick(user_id, prediction_id, client_local_date=None):
    """Count a new pick towards the user's totals and activity streak"""
    pick = _locked_pick(user_id, prediction_id)
    if pick is None:
        logger.warning(f"No pick for user {user_id} on prediction {prediction_id}")
        return
    if pick.stats_pick_applied:
        return

    today = _activity_day(pick, client_local_date)

    stats = UserStats.get_or_create(user_id, for_update=True)
    stats.total_picks = (stats.total_picks or 0) + 1
    advance_streak(stats, today)
    stats.refresh_accuracy()

    show_stats = UserShowStats.get_or_create(
        user_id, pick.prediction.show_id, for_update=True
    )
    show_stats.total_picks = (show_stats.total_picks or 0) + 1
    show_stats.refresh_accuracy()

    pick.stats_pick_applied = True

    logger.debug(
        f"Stats after pick: user {user_id} total={stats.total_picks} "
        f"streak={stats.current_streak}"
    )


@task_queue.register("update_stats_after_resolve")
def update_stats_after_resolve(user_id, prediction_id, show_id=None):
    """Reconcile stats with the pick's current outcome and earned points"""
    pick = _locked_pick(user_id, prediction_id)
    if pick is None:
        return

    # Resolution may be delivered before the pick update
    if not pick.stats_pick_applied:
        update_stats_after_pick(user_id, prediction_id)

    prediction = pick.prediction
    resolved = prediction.state == STATE_RESOLVED
    correct = bool(resolved and pick.option_id == prediction.outcome_option_id)
    earned = pick.earned_points if resolved else 0

    correct_delta = int(correct) - int(bool(pick.stats_correct_applied))
    points_delta = earned - (pick.stats_points_applied or 0)

    if correct_delta == 0 and points_delta == 0:
        return

    stats = UserStats.get_or_create(user_id, for_update=True)
    stats.correct_picks = (stats.correct_picks or 0) + correct_delta
    stats.refresh_accuracy()

    # Corrections may take points back, from lifetime as well as balance
    if points_delta:
        UserStats.apply_points(user_id, points_delta, lifetime_delta=points_delta)

    show_stats = UserShowStats.get_or_create(
        user_id, show_id or prediction.show_id, for_update=True
    )
    show_stats.correct_picks = (show_stats.correct_picks or 0) + correct_delta
    show_stats.refresh_accuracy()

    pick.stats_correct_applied = correct
    pick.stats_points_applied = earned

    logger.debug(
        f"Stats after resolve: user {user_id} prediction {prediction_id} "
        f"correct={correct_delta:+d} points={points_delta:+d}"
    )


def _lifetime_from_ledger(entries):
    """Gains count towards lifetime; only resolution corrections take it back"""
    lifetime = 0
    for entry in entries:
        if entry.points > 0 or entry.reason == REASON_RESOLUTION_CORRECTION:
            lifetime += entry.points
    return lifetime


def _streaks_from_days(days):
    """(current, best) runs of consecutive days, current ending at the last day"""
    current = best = 0
    previous = None
    for day in days:
        if previous is not None and previous == previous_day(day):
            current += 1
        else:
            current = 1
        best = max(best, current)
        previous = day
    return current, best


def rebuild_user_stats(user_id):
    """Recompute a user's stats from picks and the ledger.

    Repair path for drift; also resets the per-pick bookkeeping so later
    incremental updates stay consistent. Caller commits.
    """
    picks = (
        PredictionPick.query.filter_by(user_id=user_id)
        .join(Prediction, PredictionPick.prediction_id == Prediction.id)
        .order_by(PredictionPick.picked_at)
        .all()
    )
    entries = PointsLedgerEntry.query.filter_by(user_id=user_id).all()

    stats = UserStats.get_or_create(user_id, for_update=True)
    stats.total_picks = len(picks)

    per_show = {}
    correct_total = 0
    days = set()

    for pick in picks:
        prediction = pick.prediction
        resolved = prediction.state == STATE_RESOLVED
        correct = bool(resolved and pick.option_id == prediction.outcome_option_id)

        show_totals = per_show.setdefault(prediction.show_id, [0, 0])
        show_totals[0] += 1
        if correct:
            show_totals[1] += 1
            correct_total += 1

        days.add(_activity_day(pick))

        pick.stats_pick_applied = True
        pick.stats_correct_applied = correct
        pick.stats_points_applied = pick.earned_points if resolved else 0

    stats.correct_picks = correct_total
    stats.refresh_accuracy()

    stats.points_balance = sum(entry.points for entry in entries)
    stats.lifetime_points = _lifetime_from_ledger(entries)

    ordered_days = sorted(days)
    stats.current_streak, stats.best_streak = _streaks_from_days(ordered_days)
    stats.last_active_day = ordered_days[-1] if ordered_days else None

    existing = {row.show_id: row for row in UserShowStats.query.filter_by(user_id=user_id)}
    for show_id, (total, correct) in per_show.items():
        row = existing.pop(show_id, None) or UserShowStats.get_or_create(user_id, show_id)
        row.total_picks = total
        row.correct_picks = correct
        row.refresh_accuracy()
    for row in existing.values():
        row.total_picks = 0
        row.correct_picks = 0
        row.accuracy = 0.0

    logger.info(
        f"Rebuilt stats for user {user_id}: picks={stats.total_picks} "
        f"correct={stats.correct_picks} balance={stats.points_balance}"
    )
    return stats


def rebuild_all_user_stats():
    """Rebuild stats for every user with picks or ledger entries"""
    user_ids = {
        row[0] for row in db.session.query(PredictionPick.user_id).distinct()
    } | {row[0] for row in db.session.query(PointsLedgerEntry.user_id).distinct()}

    for user_id in sorted(user_ids):
        rebuild_user_stats(user_id)

    return len(user_ids)
