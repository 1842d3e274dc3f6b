from flask import current_app, jsonify, request
from flask_login import current_user, login_required

from speculate import db, limiter
from speculate.errors import NotFoundError, ValidationError
from speculate.forms import json_payload, validated_form
from speculate.forms.comments import CommentForm, VoteForm
from speculate.forms.picks import MakePickForm
from speculate.forms.points import SpendPointsForm
from speculate.forms.predictions import CreatePredictionForm
from speculate.models import Episode, Season, Show
from speculate.models.prediction import PREDICTION_STATES
from speculate.routes.api import bp
from speculate.services import (
    comment_service,
    leaderboard_service,
    points_service,
    prediction_engine,
)
from speculate.utils.cache_utils import cached_query


def _viewer():
    return current_user if current_user.is_authenticated else None


def _int_arg(name):
    value = request.args.get(name)
    if value in (None, ""):
        return None
    try:
        return int(value)
    except ValueError:
        raise ValidationError(f"{name} must be an integer", details={name: value})


@cached_query("Show", timeout=600)
def _show_list():
    return [show.to_dict() for show in Show.query.order_by(Show.title).all()]


@bp.route("/health")
@limiter.exempt
def health():
    return jsonify({"status": "ok"})


@bp.route("/me")
@login_required
def me():
    data = current_user.to_dict()
    data["stats"] = points_service.get_user_stats(current_user.id)
    return jsonify(data)


# Catalog


@bp.route("/shows")
def shows():
    return jsonify(_show_list())


@bp.route("/shows/<int:show_id>")
def show_detail(show_id):
    show = db.session.get(Show, show_id)
    if show is None:
        raise NotFoundError(f"Show {show_id} not found")

    data = show.to_dict()
    data["overview"] = show.overview
    data["seasons"] = [season.to_dict() for season in show.seasons.order_by(Season.season_number)]
    return jsonify(data)


@bp.route("/shows/<int:show_id>/episodes")
def show_episodes(show_id):
    if db.session.get(Show, show_id) is None:
        raise NotFoundError(f"Show {show_id} not found")

    query = Episode.query.filter_by(show_id=show_id)
    season_number = _int_arg("season")
    if season_number is not None:
        query = query.filter_by(season_number=season_number)

    episodes = query.order_by(Episode.season_number, Episode.episode_number).all()
    return jsonify([episode.to_dict() for episode in episodes])


# Predictions


@bp.route("/predictions")
def predictions():
    state = request.args.get("state")
    if state and state not in PREDICTION_STATES:
        raise ValidationError(f"Unknown state: {state}", details={"state": state})

    return jsonify(
        prediction_engine.list_predictions(
            show_id=_int_arg("show_id"),
            episode_id=_int_arg("episode_id"),
            state=state or None,
            limit=min(_int_arg("limit") or 50, 200),
        )
    )


@bp.route("/predictions/hot")
def hot_predictions():
    return jsonify(
        prediction_engine.list_hot_predictions(limit=max(1, min(_int_arg("limit") or 10, 50)))
    )


@bp.route("/predictions", methods=["POST"])
@login_required
def create_prediction():
    payload = json_payload()
    form = validated_form(CreatePredictionForm, payload)

    prediction = prediction_engine.create_prediction(
        author=current_user,
        show_id=form.show_id.data,
        title=form.title.data,
        scope=form.scope.data,
        kind=form.kind.data,
        options=payload.get("options") or [],
        lock_at=payload.get("lock_at"),
        episode_id=form.episode_id.data,
        season_id=form.season_id.data,
        template_key=form.template_key.data or "YES_NO",
        params=payload.get("params") if isinstance(payload.get("params"), dict) else None,
    )
    return jsonify(prediction_engine.get_prediction_view(prediction.id, current_user)), 201


@bp.route("/predictions/<int:prediction_id>")
def prediction_detail(prediction_id):
    return jsonify(prediction_engine.get_prediction_view(prediction_id, _viewer()))


@bp.route("/predictions/<int:prediction_id>/picks", methods=["POST"])
@login_required
@limiter.limit(lambda: current_app.config.get("PICK_RATE_LIMIT", "30 per minute"))
def make_pick(prediction_id):
    form = validated_form(MakePickForm)

    result = prediction_engine.submit_pick(
        prediction_id,
        form.option_id.data,
        current_user.id,
        client_local_date=form.client_local_date.data or None,
    )
    return jsonify(result), 201


# Leaderboards and stats


@bp.route("/leaderboards/<kind>")
def leaderboard(kind):
    return jsonify(
        leaderboard_service.get_leaderboard(kind, request.args.get("period_key") or None)
    )


@bp.route("/users/<int:user_id>/stats")
def user_stats(user_id):
    return jsonify(points_service.get_user_stats(user_id))


@bp.route("/users/<int:user_id>/show-stats")
def user_show_stats(user_id):
    return jsonify(points_service.get_user_show_stats(user_id))


# Points


@bp.route("/me/picks")
@login_required
def my_picks():
    return jsonify(
        prediction_engine.list_user_picks(
            current_user.id,
            show_id=_int_arg("show_id"),
            status=request.args.get("status") or None,
            limit=max(1, min(_int_arg("limit") or 50, 200)),
        )
    )


@bp.route("/me/points/history")
@login_required
def points_history():
    limit = _int_arg("limit")
    if limit is not None:
        limit = max(1, min(limit, 500))

    return jsonify(
        points_service.get_points_history(
            current_user.id, reason=request.args.get("reason") or None, limit=limit
        )
    )


@bp.route("/me/points/breakdown")
@login_required
def points_breakdown():
    period = request.args.get("period", "all_time")
    return jsonify(points_service.get_points_breakdown(current_user.id, period))


@bp.route("/me/points/spend", methods=["POST"])
@login_required
def spend_points():
    form = validated_form(SpendPointsForm)
    result = points_service.spend_points(
        current_user.id, form.amount.data, note=form.note.data or None
    )
    return jsonify(result)


# Comments


@bp.route("/comments")
def comments():
    viewer = _viewer()
    return jsonify(
        comment_service.list_comments(
            viewer_id=viewer.id if viewer else None,
            prediction_id=_int_arg("prediction_id"),
            episode_id=_int_arg("episode_id"),
        )
    )


@bp.route("/comments", methods=["POST"])
@login_required
def create_comment():
    form = validated_form(CommentForm)
    comment = comment_service.create_comment(
        current_user,
        form.body.data,
        prediction_id=form.prediction_id.data,
        episode_id=form.episode_id.data,
        parent_id=form.parent_id.data,
    )
    return jsonify(comment.to_dict()), 201


@bp.route("/comments/<int:comment_id>/vote", methods=["POST"])
@login_required
def vote_comment(comment_id):
    form = validated_form(VoteForm)
    return jsonify(comment_service.vote_comment(comment_id, current_user.id, form.value.data))


@bp.route("/comments/<int:comment_id>", methods=["DELETE"])
@login_required
def delete_comment(comment_id):
    comment = comment_service.delete_comment(comment_id, current_user.id)
    return jsonify(comment.to_dict())
