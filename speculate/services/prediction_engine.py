"""
Prediction engine: authoring, picks, locking, resolution and voids.

State machine::

    open --> locked --> resolved
      |         |
      +---------+-----> void

Picks are only accepted while a prediction is open and before its lock time.
Resolution pays `potential_points` to every correct pick through the points
ledger; stats are updated afterwards by queued tasks so a slow or failing
stats update never rolls back a pick or a resolution.
"""

import logging
import re
from datetime import timedelta

from sqlalchemy.exc import IntegrityError

from speculate import db
from speculate.errors import (
    AuthorizationError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from speculate.models import (
    AuditLog,
    Episode,
    PointsLedgerEntry,
    Prediction,
    PredictionOption,
    PredictionOptionStats,
    PredictionPick,
    PredictionResolutionEvidence,
    Season,
    Show,
    User,
)
from speculate.models.points_ledger import (
    REASON_PICK_CORRECT,
    REASON_RESOLUTION_CORRECTION,
)
from speculate.models.prediction import (
    PREDICTION_KINDS,
    PREDICTION_SCOPES,
    RESOLVER_TYPES,
    STATE_LOCKED,
    STATE_OPEN,
    STATE_RESOLVED,
    STATE_VOID,
)
from speculate.services.points_service import refund_void_prediction
from speculate.services.task_queue import task_queue
from speculate.utils.scoring import (
    calculate_earned_points,
    calculate_potential_points,
    community_probability,
)
from speculate.utils.timezone_utils import (
    as_utc,
    isoformat,
    parse_day,
    parse_timestamp,
    utc_now,
)

logger = logging.getLogger(__name__)

MAX_OPTIONS = 10

PICK_STATUSES = ("pending", "correct", "incorrect")

HOT_WINDOW_HOURS = 24
HOT_URGENCY_CAP_HOURS = 6

ALREADY_PICKED_MESSAGE = (
    "You have already made a pick for this prediction. "
    "Picks cannot be changed once submitted."
)


def _get_prediction(prediction_id, for_update=False):
    """Load a prediction; for_update row-locks it and reloads its state"""
    query = Prediction.query.filter_by(id=prediction_id)
    if for_update:
        query = query.with_for_update().populate_existing()
    prediction = query.first()
    if prediction is None:
        raise NotFoundError(f"Prediction {prediction_id} not found")
    return prediction


def _require_moderator(actor, action):
    if actor is None or not actor.can_moderate:
        raise AuthorizationError(f"Only moderators can {action} predictions")


def _option_value(label):
    value = re.sub(r"[^a-z0-9]+", "_", label.lower()).strip("_")
    return value[:100] or "option"


def _normalize_options(kind, options):
    if not isinstance(options, (list, tuple)):
        raise ValidationError("options must be a list")

    normalized = []
    for raw in options:
        if isinstance(raw, str):
            raw = {"label": raw}
        if not isinstance(raw, dict):
            raise ValidationError("Each option must be a label or an object with a label")

        label = (raw.get("label") or "").strip()
        if not label:
            raise ValidationError("Option labels must not be empty")
        value = (raw.get("value") or _option_value(label)).strip()
        normalized.append({"label": label[:200], "value": value[:100]})

    if kind == "binary" and len(normalized) != 2:
        raise ValidationError("Binary predictions need exactly two options")
    if kind == "multiple_choice" and not 2 <= len(normalized) <= MAX_OPTIONS:
        raise ValidationError(
            f"Multiple choice predictions need between 2 and {MAX_OPTIONS} options"
        )

    values = [option["value"] for option in normalized]
    if len(set(values)) != len(values):
        raise ValidationError("Option values must be unique")

    return normalized


def create_prediction(author, show_id, title, scope, kind, options, lock_at=None,
                      episode_id=None, season_id=None, template_key="YES_NO",
                      params=None, now=None):
    """Create an open prediction with its options.

    Episode predictions lock at the episode's air time unless an explicit
    lock time is given.
    """
    if author is None:
        raise AuthorizationError("Authentication required")

    now = as_utc(now) if now else utc_now()

    title = (title or "").strip()
    if not title:
        raise ValidationError("title is required")
    if scope not in PREDICTION_SCOPES:
        raise ValidationError(f"Invalid scope: {scope}", details={"scope": scope})
    if kind not in PREDICTION_KINDS:
        raise ValidationError(f"Invalid kind: {kind}", details={"kind": kind})

    show = db.session.get(Show, show_id)
    if show is None:
        raise NotFoundError(f"Show {show_id} not found")

    episode = None
    if scope == "episode":
        if episode_id is None:
            raise ValidationError("episode_id is required for episode predictions")
        episode = db.session.get(Episode, episode_id)
        if episode is None or episode.show_id != show.id:
            raise NotFoundError(f"Episode {episode_id} not found for show {show.id}")
        season_id = episode.season_id
    elif scope == "season":
        if season_id is None:
            raise ValidationError("season_id is required for season predictions")
        season = db.session.get(Season, season_id)
        if season is None or season.show_id != show.id:
            raise NotFoundError(f"Season {season_id} not found for show {show.id}")

    try:
        lock_at = parse_timestamp(lock_at)
    except (TypeError, ValueError):
        raise ValidationError("lock_at must be an ISO-8601 timestamp or epoch milliseconds")

    if lock_at is None and episode is not None:
        lock_at = as_utc(episode.air_date_utc)
    if lock_at is None:
        raise ValidationError("lock_at is required")
    if lock_at <= now:
        raise ValidationError("lock_at must be in the future")

    normalized = _normalize_options(kind, options)

    prediction = Prediction(
        author_user_id=author.id,
        template_key=template_key or "YES_NO",
        params=params or {},
        title=title[:300],
        scope=scope,
        show_id=show.id,
        season_id=season_id,
        episode_id=episode.id if episode else None,
        kind=kind,
        state=STATE_OPEN,
        lock_at=lock_at,
        picks_count=0,
    )
    for ordinal, option in enumerate(normalized):
        prediction.options.append(
            PredictionOption(label=option["label"], value=option["value"], ordinal=ordinal)
        )

    try:
        db.session.add(prediction)
        db.session.flush()

        for option in prediction.options:
            db.session.add(
                PredictionOptionStats(
                    prediction_id=prediction.id, option_id=option.id, pick_count=0
                )
            )
        show.predictions_count = (show.predictions_count or 0) + 1
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Error creating prediction: {e}", exc_info=True)
        raise

    logger.info(
        f"Prediction {prediction.id} created by user {author.id} on show {show.id} "
        f"({kind}, {len(normalized)} options, locks {lock_at.isoformat()})"
    )
    return prediction


def _check_pick(prediction, option_id, user_id, client_local_date, now):
    """Pick preconditions in order; returns the chosen option"""
    if prediction.state != STATE_OPEN:
        raise StateConflictError(
            "This prediction is no longer accepting picks", code="prediction_not_open"
        )
    if prediction.is_past_lock(now):
        raise StateConflictError("This prediction has locked", code="prediction_locked")

    existing = PredictionPick.query.filter_by(
        user_id=user_id, prediction_id=prediction.id
    ).first()
    if existing:
        raise StateConflictError(ALREADY_PICKED_MESSAGE, code="already_picked")

    option = prediction.get_option(option_id)
    if option is None:
        raise ValidationError(
            "Option does not belong to this prediction",
            code="invalid_option",
            details={"option_id": option_id},
        )

    if client_local_date:
        try:
            parse_day(client_local_date)
        except (TypeError, ValueError):
            raise ValidationError(
                "client_local_date must be YYYY-MM-DD",
                details={"client_local_date": client_local_date},
            )

    return option


def submit_pick(prediction_id, option_id, user_id, client_local_date=None, now=None):
    """Record a user's one and only pick for a prediction.

    Returns:
        {"pick_id", "potential_points", "community_probability"}
    """
    now = as_utc(now) if now else utc_now()

    # Serializes picks with resolve, void and lock on the same prediction
    prediction = _get_prediction(prediction_id, for_update=True)

    try:
        option = _check_pick(prediction, option_id, user_id, client_local_date, now)
    except (StateConflictError, ValidationError):
        db.session.rollback()
        raise

    # Potential points from the community split before this pick
    counts = PredictionOptionStats.counts_for(prediction.id)
    probability = community_probability(counts.get(option.id, 0), sum(counts.values()))
    potential = calculate_potential_points(prediction.hours_until_lock(now), probability)

    pick = PredictionPick(
        prediction_id=prediction.id,
        option_id=option.id,
        user_id=user_id,
        picked_at=now,
        client_local_date=client_local_date,
        pre_lock_community_probability=probability,
        potential_points=potential,
        earned_points=0,
    )

    try:
        db.session.add(pick)
        db.session.flush()

        # Only counts while still open; a state change that won the lock
        # leaves no row to update
        result = db.session.execute(
            db.update(Prediction)
            .where(Prediction.id == prediction.id, Prediction.state == STATE_OPEN)
            .values(picks_count=Prediction.picks_count + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise StateConflictError(
                "This prediction is no longer accepting picks", code="prediction_not_open"
            )

        PredictionOptionStats.increment(prediction.id, option.id, now=now)
        db.session.commit()
    except StateConflictError:
        db.session.rollback()
        raise
    except IntegrityError:
        # Concurrent duplicate submission
        db.session.rollback()
        raise StateConflictError(ALREADY_PICKED_MESSAGE, code="already_picked")
    except Exception as e:
        db.session.rollback()
        logger.error(f"Error submitting pick: {e}", exc_info=True)
        raise

    logger.info(
        f"User {user_id} picked option {option.id} on prediction {prediction.id} "
        f"(p={probability:.2f}, potential={potential})"
    )

    task_queue.enqueue(
        "update_stats_after_pick",
        user_id=user_id,
        prediction_id=prediction.id,
        client_local_date=client_local_date,
    )

    return {
        "pick_id": pick.id,
        "potential_points": potential,
        "community_probability": probability,
    }


def _validate_evidence(evidence):
    items = []
    for raw in evidence or []:
        if not isinstance(raw, dict):
            raise ValidationError("Evidence entries must be objects")
        source_type = raw.get("source_type")
        if source_type not in PredictionResolutionEvidence.SOURCE_TYPES:
            raise ValidationError(
                f"Invalid evidence source_type: {source_type}",
                details={"source_type": source_type},
            )
        timestamp_sec = raw.get("timestamp_sec")
        if timestamp_sec is not None and (
            isinstance(timestamp_sec, bool) or not isinstance(timestamp_sec, int)
        ):
            raise ValidationError("timestamp_sec must be an integer")
        items.append(raw)
    return items


def _resolution_summary(prediction):
    picks = prediction.picks.all()
    correct = [p for p in picks if p.option_id == prediction.outcome_option_id]
    return {
        "prediction_id": prediction.id,
        "total_picks": len(picks),
        "correct_picks": len(correct),
        "points_awarded": sum(p.earned_points for p in correct),
    }


def resolve_prediction(prediction_id, winning_option_id, resolver, evidence=None,
                       resolver_type="manual", confidence=None, now=None):
    """Resolve a prediction and pay correct picks.

    Re-resolving with the same option is a no-op. Re-resolving with a
    different option is a correction: earned points are recomputed and the
    difference from what each pick was already paid is written as a
    resolution_correction ledger entry.
    """
    _require_moderator(resolver, "resolve")
    now = as_utc(now) if now else utc_now()

    if resolver_type not in RESOLVER_TYPES:
        raise ValidationError(f"Invalid resolver_type: {resolver_type}")
    evidence_items = _validate_evidence(evidence)

    prediction = _get_prediction(prediction_id, for_update=True)

    if prediction.state == STATE_VOID:
        raise StateConflictError("A voided prediction cannot be resolved")

    option = prediction.get_option(winning_option_id)
    if option is None:
        raise ValidationError(
            "Winning option does not belong to this prediction",
            code="invalid_option",
            details={"option_id": winning_option_id},
        )

    if prediction.state == STATE_RESOLVED and prediction.outcome_option_id == option.id:
        db.session.rollback()
        summary = _resolution_summary(prediction)
        summary["already_resolved"] = True
        return summary

    previous_outcome_id = (
        prediction.outcome_option_id if prediction.state == STATE_RESOLVED else None
    )

    total_picks = 0
    correct_picks = 0
    points_awarded = 0
    user_ids = set()

    try:
        prediction.state = STATE_RESOLVED
        prediction.outcome_option_id = option.id
        prediction.resolved_at = now
        prediction.resolver_type = resolver_type
        if confidence is not None:
            prediction.confidence = confidence

        for item in evidence_items:
            db.session.add(
                PredictionResolutionEvidence(
                    prediction_id=prediction.id,
                    source_type=item["source_type"],
                    url=item.get("url"),
                    snippet=item.get("snippet"),
                    timestamp_sec=item.get("timestamp_sec"),
                    added_by_user_id=resolver.id,
                )
            )

        for pick in prediction.picks.all():
            total_picks += 1
            user_ids.add(pick.user_id)

            earned = calculate_earned_points(pick, option.id)
            pick.earned_points = earned
            if earned > 0:
                correct_picks += 1

            if not PointsLedgerEntry.has_entry(pick.id, REASON_PICK_CORRECT):
                if earned > 0:
                    PointsLedgerEntry.record(
                        pick.user_id,
                        earned,
                        REASON_PICK_CORRECT,
                        prediction_id=prediction.id,
                        pick_id=pick.id,
                        metadata={"option_id": option.id},
                        now=now,
                    )
                    points_awarded += earned
                continue

            delta = earned - PointsLedgerEntry.paid_for_pick(pick.id)
            if delta != 0:
                PointsLedgerEntry.record(
                    pick.user_id,
                    delta,
                    REASON_RESOLUTION_CORRECTION,
                    prediction_id=prediction.id,
                    pick_id=pick.id,
                    metadata={
                        "previous_outcome_option_id": previous_outcome_id,
                        "outcome_option_id": option.id,
                    },
                    now=now,
                )
                points_awarded += delta

        AuditLog.log_resolution(
            resolver,
            prediction,
            total_picks,
            correct_picks,
            points_awarded,
            previous_outcome_id=previous_outcome_id,
        )
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Error resolving prediction {prediction_id}: {e}", exc_info=True)
        raise

    if previous_outcome_id is not None:
        logger.warning(
            f"Prediction {prediction.id} re-resolved: option {previous_outcome_id} -> "
            f"{option.id} ({points_awarded:+d} points net)"
        )
    else:
        logger.info(
            f"Prediction {prediction.id} resolved as option {option.id}: "
            f"{correct_picks}/{total_picks} correct, {points_awarded} points awarded"
        )

    for user_id in sorted(user_ids):
        task_queue.enqueue(
            "update_stats_after_resolve",
            user_id=user_id,
            prediction_id=prediction.id,
            show_id=prediction.show_id,
        )

    return {
        "prediction_id": prediction.id,
        "total_picks": total_picks,
        "correct_picks": correct_picks,
        "points_awarded": points_awarded,
    }


def lock_prediction(prediction_id, actor=None):
    """Stop accepting picks. Idempotent; actor is None for the scheduled sweep."""
    if actor is not None:
        _require_moderator(actor, "lock")

    prediction = _get_prediction(prediction_id, for_update=True)
    if prediction.state != STATE_OPEN:
        result = {"prediction_id": prediction.id, "state": prediction.state, "changed": False}
        db.session.rollback()
        return result

    try:
        prediction.state = STATE_LOCKED
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Error locking prediction {prediction_id}: {e}", exc_info=True)
        raise

    logger.info(f"Prediction {prediction.id} locked by {actor.id if actor else 'system'}")
    return {"prediction_id": prediction.id, "state": prediction.state, "changed": True}


def lock_due_predictions(now=None):
    """Lock every open prediction whose lock time has passed"""
    now = as_utc(now) if now else utc_now()

    due = (
        Prediction.query.filter(Prediction.state == STATE_OPEN, Prediction.lock_at <= now)
        .with_for_update()
        .populate_existing()
        .all()
    )
    if not due:
        return 0

    try:
        for prediction in due:
            prediction.state = STATE_LOCKED
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Error in lock sweep: {e}", exc_info=True)
        raise

    logger.info(f"Lock sweep locked {len(due)} predictions")
    return len(due)


def void_prediction(prediction_id, actor, reason=None):
    """Void an unresolved prediction and refund half of every pick's potential"""
    _require_moderator(actor, "void")

    prediction = _get_prediction(prediction_id, for_update=True)

    if prediction.state == STATE_VOID:
        db.session.rollback()
        return {
            "prediction_id": prediction.id,
            "state": STATE_VOID,
            "refunded_picks": 0,
            "points_refunded": 0,
            "already_void": True,
        }
    if prediction.state == STATE_RESOLVED:
        raise StateConflictError("A resolved prediction cannot be voided")

    try:
        prediction.state = STATE_VOID
        refunded, points = refund_void_prediction(prediction.id)
        entry = AuditLog.log_void(actor, prediction, refunded, points)
        if reason:
            entry.details = dict(entry.details, reason=reason)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Error voiding prediction {prediction_id}: {e}", exc_info=True)
        raise

    logger.info(
        f"Prediction {prediction.id} voided by user {actor.id}: "
        f"refunded {points} points across {refunded} picks"
    )
    return {
        "prediction_id": prediction.id,
        "state": STATE_VOID,
        "refunded_picks": refunded,
        "points_refunded": points,
    }


def get_prediction_view(prediction_id, viewer=None):
    """Prediction with live option counts and the viewer's own pick"""
    prediction = _get_prediction(prediction_id)

    if prediction.is_hidden and not (
        viewer is not None
        and (viewer.can_moderate or viewer.id == prediction.author_user_id)
    ):
        raise NotFoundError(f"Prediction {prediction_id} not found")

    counts = PredictionOptionStats.counts_for(prediction.id)
    total = sum(counts.values())

    options = []
    for option in prediction.options:
        count = counts.get(option.id, 0)
        data = option.to_dict()
        data["pick_count"] = count
        data["percentage"] = round(count / total * 100, 1) if total else 0.0
        data["is_outcome"] = option.id == prediction.outcome_option_id
        options.append(data)

    viewer_pick = None
    if viewer is not None:
        pick = PredictionPick.query.filter_by(
            user_id=viewer.id, prediction_id=prediction.id
        ).first()
        if pick:
            viewer_pick = pick.to_dict()

    data = prediction.to_dict()
    data["options"] = options
    data["total_picks"] = total
    data["viewer_pick"] = viewer_pick
    data["show"] = prediction.show.to_dict() if prediction.show else None
    data["episode"] = prediction.episode.to_dict() if prediction.episode else None
    return data


def list_predictions(show_id=None, episode_id=None, state=None, limit=50):
    query = Prediction.query.filter(Prediction.is_hidden.is_(False))
    if show_id is not None:
        query = query.filter_by(show_id=show_id)
    if episode_id is not None:
        query = query.filter_by(episode_id=episode_id)
    if state is not None:
        query = query.filter_by(state=state)

    predictions = query.order_by(Prediction.lock_at.asc(), Prediction.id.asc()).limit(limit).all()
    return [prediction.to_dict() for prediction in predictions]


def _pick_status(pick, prediction):
    if prediction.state != STATE_RESOLVED:
        return "pending"
    return "correct" if pick.option_id == prediction.outcome_option_id else "incorrect"


def list_user_picks(user_id, show_id=None, status=None, limit=50):
    """A user's pick history, newest first.

    status filters on pending / correct / incorrect; a pick is pending until
    its prediction is resolved (void predictions stay pending).
    """
    if status is not None and status not in PICK_STATUSES:
        raise ValidationError(f"Unknown status: {status}", details={"status": status})
    if db.session.get(User, user_id) is None:
        raise NotFoundError(f"User {user_id} not found")

    query = PredictionPick.query.join(
        Prediction, PredictionPick.prediction_id == Prediction.id
    ).filter(PredictionPick.user_id == user_id)

    if show_id is not None:
        query = query.filter(Prediction.show_id == show_id)

    if status == "pending":
        query = query.filter(Prediction.state != STATE_RESOLVED)
    elif status == "correct":
        query = query.filter(
            Prediction.state == STATE_RESOLVED,
            PredictionPick.option_id == Prediction.outcome_option_id,
        )
    elif status == "incorrect":
        query = query.filter(
            Prediction.state == STATE_RESOLVED,
            PredictionPick.option_id != Prediction.outcome_option_id,
        )

    picks = (
        query.order_by(PredictionPick.picked_at.desc(), PredictionPick.id.desc())
        .limit(limit)
        .all()
    )

    history = []
    for pick in picks:
        prediction = pick.prediction
        winning = prediction.get_option(prediction.outcome_option_id)
        episode = prediction.episode
        history.append(
            {
                "pick_id": pick.id,
                "picked_at": isoformat(pick.picked_at),
                "prediction_id": prediction.id,
                "prediction_title": prediction.title,
                "prediction_state": prediction.state,
                "template_key": prediction.template_key,
                "show_title": prediction.show.title if prediction.show else None,
                "show_slug": prediction.show.slug if prediction.show else None,
                "episode_title": episode.title if episode else None,
                "season_number": episode.season_number if episode else None,
                "episode_number": episode.episode_number if episode else None,
                "picked_option": pick.option.label if pick.option else None,
                "winning_option": winning.label if winning else None,
                "status": _pick_status(pick, prediction),
                "potential_points": pick.potential_points,
                "earned_points": pick.earned_points or 0,
            }
        )
    return history


def list_hot_predictions(limit=10, now=None):
    """Open predictions locking within the next day, most urgent first.

    Urgency is the pick rate so far times the hours left, with the hours
    capped so that predictions about to lock do not dominate on time alone.
    """
    now = as_utc(now) if now else utc_now()
    window_end = now + timedelta(hours=HOT_WINDOW_HOURS)

    predictions = (
        Prediction.query.filter(
            Prediction.state == STATE_OPEN,
            Prediction.is_hidden.is_(False),
            Prediction.lock_at >= now,
            Prediction.lock_at <= window_end,
        )
        .order_by(Prediction.lock_at.asc(), Prediction.id.asc())
        .limit(limit)
        .all()
    )

    hot = []
    for prediction in predictions:
        total = sum(PredictionOptionStats.counts_for(prediction.id).values())
        hours_left = max(1.0, prediction.hours_until_lock(now))
        picks_per_hour = total / max(1.0, HOT_WINDOW_HOURS - hours_left)
        urgency = picks_per_hour * min(hours_left, HOT_URGENCY_CAP_HOURS)

        data = prediction.to_dict()
        data["show_title"] = prediction.show.title if prediction.show else None
        data["show_slug"] = prediction.show.slug if prediction.show else None
        data["total_picks"] = total
        data["hours_left"] = round(hours_left, 1)
        data["urgency_score"] = round(urgency, 4)
        hot.append(data)

    hot.sort(key=lambda item: item["urgency_score"], reverse=True)
    return hot
