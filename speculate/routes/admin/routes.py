from flask import jsonify, request
from flask_login import current_user

from speculate import db
from speculate.auth import admin_required, moderator_required
from speculate.errors import NotFoundError, ValidationError
from speculate.forms import json_payload, validated_form
from speculate.forms.points import AdjustPointsForm, TournamentPayoutForm
from speculate.forms.predictions import ResolvePredictionForm, VoidPredictionForm
from speculate.models import AuditLog, Prediction, PredictionOptionStats, User
from speculate.routes.admin import bp
from speculate.services import (
    leaderboard_service,
    points_service,
    prediction_engine,
    stats_aggregator,
)
from speculate.services.scheduler_service import scheduler_service
from speculate.services.task_queue import task_queue
from speculate.utils.cache_utils import get_cache_stats


# Prediction lifecycle


@bp.route("/predictions/<int:prediction_id>/resolve", methods=["POST"])
@moderator_required
def resolve_prediction(prediction_id):
    payload = json_payload()
    form = validated_form(ResolvePredictionForm, payload)

    evidence = payload.get("evidence") or []
    if isinstance(evidence, dict):
        evidence = [evidence]
    if not isinstance(evidence, list):
        raise ValidationError("evidence must be a list")

    result = prediction_engine.resolve_prediction(
        prediction_id,
        form.winning_option_id.data,
        current_user,
        evidence=evidence,
        resolver_type=form.resolver_type.data,
        confidence=form.confidence.data,
    )
    return jsonify(result)


@bp.route("/predictions/<int:prediction_id>/lock", methods=["POST"])
@moderator_required
def lock_prediction(prediction_id):
    return jsonify(prediction_engine.lock_prediction(prediction_id, actor=current_user))


@bp.route("/predictions/<int:prediction_id>/void", methods=["POST"])
@moderator_required
def void_prediction(prediction_id):
    form = validated_form(VoidPredictionForm)
    return jsonify(
        prediction_engine.void_prediction(
            prediction_id, current_user, reason=form.reason.data or None
        )
    )


@bp.route("/predictions/<int:prediction_id>/reconcile", methods=["POST"])
@moderator_required
def reconcile_prediction(prediction_id):
    if db.session.get(Prediction, prediction_id) is None:
        raise NotFoundError(f"Prediction {prediction_id} not found")

    corrected = PredictionOptionStats.recount(prediction_id)
    db.session.commit()
    return jsonify({"prediction_id": prediction_id, "corrected": corrected})


# Points


@bp.route("/points/adjust", methods=["POST"])
@admin_required
def adjust_points():
    form = validated_form(AdjustPointsForm)
    result = points_service.adjust_points(
        form.user_id.data, form.delta.data, form.note.data, current_user
    )
    return jsonify(result)


@bp.route("/tournaments/payout", methods=["POST"])
@admin_required
def tournament_payout():
    payload = json_payload()
    form = validated_form(TournamentPayoutForm, payload)

    payouts = payload.get("payouts")
    if not isinstance(payouts, list) or not all(isinstance(p, dict) for p in payouts):
        raise ValidationError("payouts must be a list of objects")

    return jsonify(points_service.process_tournament_payout(form.tournament_id.data, payouts))


@bp.route("/users/<int:user_id>/rebuild-stats", methods=["POST"])
@admin_required
def rebuild_stats(user_id):
    if db.session.get(User, user_id) is None:
        raise NotFoundError(f"User {user_id} not found")

    stats = stats_aggregator.rebuild_user_stats(user_id)
    db.session.commit()
    return jsonify(stats.to_dict())


# Leaderboards and operations


@bp.route("/leaderboards/compute", methods=["POST"])
@admin_required
def compute_leaderboards():
    return jsonify(leaderboard_service.compute_all_leaderboards())


@bp.route("/scheduler/status")
@admin_required
def scheduler_status():
    status = scheduler_service.get_status()
    status["tasks"] = task_queue.get_status()
    status["cache"] = get_cache_stats()
    return jsonify(status)


@bp.route("/scheduler/action", methods=["POST"])
@admin_required
def scheduler_action():
    """Run a job now, or pause/resume a scheduled job"""
    payload = json_payload()
    action = payload.get("action")

    if action == "run":
        success, message = scheduler_service.force_run(payload.get("job_type"))
    elif action in ("pause_job", "resume_job"):
        job_id = payload.get("job_id")
        if not job_id:
            raise ValidationError("job_id is required")
        if action == "pause_job":
            success, message = scheduler_service.pause_job(job_id)
        else:
            success, message = scheduler_service.resume_job(job_id)
    else:
        raise ValidationError(f"Unknown action: {action}", details={"action": action})

    if not success:
        return jsonify({"error": "scheduler_action_failed", "message": message}), 500
    return jsonify({"message": message})


@bp.route("/audit-log")
@admin_required
def audit_log():
    query = AuditLog.query
    prediction_id = request.args.get("prediction_id", type=int)
    if prediction_id:
        query = query.filter_by(prediction_id=prediction_id)

    limit = min(request.args.get("limit", 100, type=int), 500)
    entries = query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(limit).all()
    return jsonify([entry.to_dict() for entry in entries])
