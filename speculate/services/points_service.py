"""
Points ledger operations.

Every change to a user's points is one ledger entry plus the matching
UserStats balance/lifetime patch, committed together. Accuracy and streak
fields are left to the stats aggregator.
"""

import logging
from datetime import timedelta

from flask import current_app

from speculate import db
from speculate.errors import (
    AuthorizationError,
    InsufficientBalanceError,
    NotFoundError,
    ValidationError,
)
from speculate.models import (
    AuditLog,
    PointsLedgerEntry,
    Prediction,
    User,
    UserShowStats,
    UserStats,
)
from speculate.models.points_ledger import (
    LEDGER_REASONS,
    REASON_ADMIN_ADJUSTMENT,
    REASON_CONTRARIAN_BONUS,
    REASON_EARLY_BONUS,
    REASON_PICK_CORRECT,
    REASON_REFUND,
    REASON_RESOLUTION_CORRECTION,
    REASON_SPEND,
    REASON_STREAK_BONUS,
    REASON_TOURNAMENT_PAYOUT,
)
from speculate.utils.scoring import STREAK_MILESTONES, refund_amount, streak_bonus_for
from speculate.utils.timezone_utils import (
    as_utc,
    previous_day,
    reference_midnight,
    reference_today,
    utc_midnight,
    utc_now,
)

logger = logging.getLogger(__name__)

BREAKDOWN_PERIODS = ("today", "this_week", "this_month", "all_time")

# ledger reason -> breakdown bucket
BREAKDOWN_BUCKETS = {
    REASON_PICK_CORRECT: "predictions",
    REASON_RESOLUTION_CORRECTION: "predictions",
    REASON_STREAK_BONUS: "streaks",
    REASON_TOURNAMENT_PAYOUT: "tournaments",
    REASON_EARLY_BONUS: "bonuses",
    REASON_CONTRARIAN_BONUS: "bonuses",
    REASON_REFUND: "refunds",
    REASON_ADMIN_ADJUSTMENT: "adjustments",
    REASON_SPEND: "spent",
}


def _require_user(user_id):
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found")
    return user


def _require_int(value, name):
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer", details={name: value})
    return value


def adjust_points(user_id, delta, note, actor):
    """Admin adjustment: balance moves by delta, lifetime only counts gains"""
    if actor is None or not actor.is_admin:
        raise AuthorizationError("Only admins can adjust points")

    _require_int(delta, "delta")
    if delta == 0:
        raise ValidationError("delta must be non-zero")
    if not note or not str(note).strip():
        raise ValidationError("A note is required for adjustments")

    _require_user(user_id)

    try:
        PointsLedgerEntry.record(
            user_id,
            delta,
            REASON_ADMIN_ADJUSTMENT,
            metadata={"note": note, "actor_user_id": actor.id},
        )
        stats = UserStats.apply_points(user_id, delta)
        AuditLog.log_adjustment(actor, user_id, delta, note)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Error adjusting points for user {user_id}: {e}", exc_info=True)
        raise

    logger.info(f"Admin {actor.id} adjusted user {user_id} by {delta:+d}: {note}")
    return {"user_id": user_id, "points_balance": stats.points_balance}


def spend_points(user_id, amount, note=None):
    """Deduct points from a user's balance (lifetime is unchanged)"""
    _require_int(amount, "amount")
    if amount <= 0:
        raise ValidationError("amount must be positive", details={"amount": amount})

    _require_user(user_id)

    try:
        stats, spent = UserStats.try_spend(user_id, amount)
        if not spent:
            balance = stats.points_balance or 0
            db.session.rollback()
            raise InsufficientBalanceError(
                f"Insufficient balance: {balance} available, {amount} required",
                details={"balance": balance, "required": amount},
            )

        PointsLedgerEntry.record(
            user_id, -amount, REASON_SPEND, metadata={"note": note} if note else None
        )
        db.session.commit()
    except InsufficientBalanceError:
        raise
    except Exception as e:
        db.session.rollback()
        logger.error(f"Error spending points for user {user_id}: {e}", exc_info=True)
        raise

    return {"user_id": user_id, "points_balance": stats.points_balance}


def award_streak_bonuses(now=None):
    """Daily job: reward users who were active yesterday and hit a streak milestone.

    Days follow the reference timezone. At most one streak bonus per user per
    reference day, so reruns are harmless.
    """
    now = as_utc(now) if now else utc_now()
    yesterday = previous_day(reference_today(now))
    since = reference_midnight(now)

    candidates = UserStats.query.filter(
        UserStats.last_active_day == yesterday,
        UserStats.current_streak.in_(list(STREAK_MILESTONES)),
    ).all()

    awarded = []
    try:
        for stats in candidates:
            bonus = streak_bonus_for(stats.current_streak)
            if bonus <= 0:
                continue

            already = PointsLedgerEntry.query.filter(
                PointsLedgerEntry.user_id == stats.user_id,
                PointsLedgerEntry.reason == REASON_STREAK_BONUS,
                PointsLedgerEntry.created_at >= since,
            ).first()
            if already:
                continue

            PointsLedgerEntry.record(
                stats.user_id,
                bonus,
                REASON_STREAK_BONUS,
                metadata={"streak": stats.current_streak},
                now=now,
            )
            UserStats.apply_points(stats.user_id, bonus)
            awarded.append({"user_id": stats.user_id, "streak": stats.current_streak, "points": bonus})

        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Error awarding streak bonuses: {e}", exc_info=True)
        raise

    logger.info(f"Awarded streak bonuses to {len(awarded)} users")
    return awarded


def process_tournament_payout(tournament_id, payouts):
    """Pay out a finished tournament.

    payouts: [{"user_id": int, "points": int, "rank": int}, ...]
    Users already paid for this tournament are skipped.
    """
    if not tournament_id:
        raise ValidationError("tournament_id is required")
    if not payouts:
        raise ValidationError("payouts must not be empty")

    for payout in payouts:
        _require_int(payout.get("user_id"), "user_id")
        _require_int(payout.get("points"), "points")
        if payout["points"] <= 0:
            raise ValidationError("payout points must be positive", details=payout)

    tournament_id = str(tournament_id)
    paid = 0
    total = 0

    try:
        for payout in payouts:
            user_id = payout["user_id"]
            _require_user(user_id)

            exists = PointsLedgerEntry.query.filter_by(
                user_id=user_id,
                reason=REASON_TOURNAMENT_PAYOUT,
                tournament_id=tournament_id,
            ).first()
            if exists:
                logger.info(f"Tournament {tournament_id} already paid to user {user_id}")
                continue

            PointsLedgerEntry.record(
                user_id,
                payout["points"],
                REASON_TOURNAMENT_PAYOUT,
                tournament_id=tournament_id,
                metadata={"rank": payout.get("rank")},
            )
            UserStats.apply_points(user_id, payout["points"])
            paid += 1
            total += payout["points"]

        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(f"Tournament {tournament_id}: paid {total} points to {paid} users")
    return {"tournament_id": tournament_id, "paid": paid, "points": total}


def refund_void_prediction(prediction_id):
    """Refund half the potential of every pick on a voided prediction.

    Picks that already have a refund entry are skipped. Caller commits.
    """
    prediction = db.session.get(Prediction, prediction_id)
    if prediction is None:
        raise NotFoundError(f"Prediction {prediction_id} not found")

    refunded = 0
    points = 0
    for pick in prediction.picks.all():
        if PointsLedgerEntry.has_entry(pick.id, REASON_REFUND):
            continue

        amount = refund_amount(pick.potential_points)
        if amount <= 0:
            continue

        PointsLedgerEntry.record(
            pick.user_id,
            amount,
            REASON_REFUND,
            prediction_id=prediction.id,
            pick_id=pick.id,
            metadata={"potential_points": pick.potential_points},
        )
        UserStats.apply_points(pick.user_id, amount)
        refunded += 1
        points += amount

    return refunded, points


def get_points_history(user_id, reason=None, limit=None):
    """Ledger entries for a user, newest first"""
    if reason is not None and reason not in LEDGER_REASONS:
        raise ValidationError(f"Unknown reason: {reason}", details={"reason": reason})

    _require_user(user_id)
    limit = limit or current_app.config.get("POINTS_HISTORY_LIMIT", 50)

    query = PointsLedgerEntry.query.filter_by(user_id=user_id)
    if reason:
        query = query.filter_by(reason=reason)

    entries = (
        query.order_by(PointsLedgerEntry.created_at.desc(), PointsLedgerEntry.id.desc())
        .limit(limit)
        .all()
    )
    return [entry.to_dict() for entry in entries]


def _period_start(period, now):
    if period == "today":
        return utc_midnight(now)
    if period == "this_week":
        return now - timedelta(days=7)
    if period == "this_month":
        return now - timedelta(days=30)
    return None


def get_points_breakdown(user_id, period="all_time", now=None):
    """Points by source over a period, with a few headline details"""
    if period not in BREAKDOWN_PERIODS:
        raise ValidationError(f"Unknown period: {period}", details={"period": period})

    _require_user(user_id)
    now = as_utc(now) if now else utc_now()

    query = PointsLedgerEntry.query.filter_by(user_id=user_id)
    start = _period_start(period, now)
    if start is not None:
        query = query.filter(PointsLedgerEntry.created_at >= start)
    entries = query.all()

    breakdown = {bucket: 0 for bucket in sorted(set(BREAKDOWN_BUCKETS.values()))}
    breakdown["total"] = 0

    wins = []
    tournaments = 0
    streak_bonuses = 0

    for entry in entries:
        breakdown["total"] += entry.points
        breakdown[BREAKDOWN_BUCKETS[entry.reason]] += entry.points

        if entry.reason == REASON_PICK_CORRECT:
            wins.append(entry.points)
        elif entry.reason == REASON_STREAK_BONUS:
            streak_bonuses += 1
        elif entry.reason == REASON_TOURNAMENT_PAYOUT:
            tournaments += 1

    details = {
        "predictions_count": len(wins),
        "tournaments_won": tournaments,
        "streak_bonuses": streak_bonuses,
        "largest_win": max(wins) if wins else 0,
        "average_win": round(sum(wins) / len(wins)) if wins else 0,
    }

    return {
        "period": period,
        "breakdown": breakdown,
        "details": details,
        "entry_count": len(entries),
    }


def get_user_stats(user_id):
    """Stats for a user, including level; zeroed if the user has no activity yet"""
    _require_user(user_id)
    stats = UserStats.query.filter_by(user_id=user_id).first()
    if stats is None:
        stats = UserStats(
            user_id=user_id,
            total_picks=0,
            correct_picks=0,
            accuracy=0.0,
            points_balance=0,
            lifetime_points=0,
            current_streak=0,
            best_streak=0,
        )
    return stats.to_dict()


def get_user_show_stats(user_id):
    _require_user(user_id)
    rows = (
        UserShowStats.query.filter_by(user_id=user_id)
        .order_by(UserShowStats.total_picks.desc(), UserShowStats.show_id)
        .all()
    )
    return [row.to_dict() for row in rows]
