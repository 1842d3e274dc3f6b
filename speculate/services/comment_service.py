"""
Comments with a spoiler gate.

A comment that looks like a spoiler and targets an episode that has not aired
yet is hidden from everyone except its author until SPOILER_GRACE_MINUTES
after the episode airs.
"""

import logging
from datetime import timedelta

from flask import current_app

from speculate import db
from speculate.errors import (
    AuthorizationError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from speculate.models import Comment, CommentVote, Episode, Prediction
from speculate.models.comment import DELETED_BODY
from speculate.utils.timezone_utils import as_utc, utc_now

logger = logging.getLogger(__name__)

SPOILER_KEYWORDS = ("spoiler", "dies", "kills")
MAX_BODY_LENGTH = 5000


def contains_spoiler(body):
    text = (body or "").lower()
    return any(keyword in text for keyword in SPOILER_KEYWORDS)


def spoiler_visible_after(body, episode, now):
    """When a comment becomes visible to others, or None if it never is gated"""
    if episode is None or episode.air_date_utc is None or not contains_spoiler(body):
        return None

    air = as_utc(episode.air_date_utc)
    if air <= now:
        return None

    grace = current_app.config.get("SPOILER_GRACE_MINUTES", 60)
    return air + timedelta(minutes=grace)


def create_comment(author, body, prediction_id=None, episode_id=None, parent_id=None,
                   now=None):
    if author is None:
        raise AuthorizationError("Authentication required")

    now = as_utc(now) if now else utc_now()
    body = (body or "").strip()
    if not body:
        raise ValidationError("Comment body must not be empty")
    if len(body) > MAX_BODY_LENGTH:
        raise ValidationError(f"Comment body must be at most {MAX_BODY_LENGTH} characters")
    if prediction_id is None and episode_id is None:
        raise ValidationError("Comment must be attached to a prediction or episode")

    prediction = None
    if prediction_id is not None:
        prediction = db.session.get(Prediction, prediction_id)
        if prediction is None:
            raise NotFoundError(f"Prediction {prediction_id} not found")

    episode = None
    if episode_id is not None:
        episode = db.session.get(Episode, episode_id)
        if episode is None:
            raise NotFoundError(f"Episode {episode_id} not found")
    elif prediction is not None:
        episode = prediction.episode

    if parent_id is not None:
        parent = db.session.get(Comment, parent_id)
        if parent is None:
            raise NotFoundError(f"Parent comment {parent_id} not found")

    comment = Comment(
        author_user_id=author.id,
        prediction_id=prediction_id,
        episode_id=episode_id,
        parent_id=parent_id,
        body=body,
        is_spoiler=contains_spoiler(body),
        visible_after=spoiler_visible_after(body, episode, now),
        upvotes=0,
        downvotes=0,
    )

    try:
        db.session.add(comment)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Error creating comment: {e}", exc_info=True)
        raise

    if comment.visible_after:
        logger.info(
            f"Comment {comment.id} gated as spoiler until {comment.visible_after.isoformat()}"
        )
    return comment


def list_comments(viewer_id=None, prediction_id=None, episode_id=None, now=None):
    """Comments on a target that the viewer is allowed to see, oldest first"""
    if prediction_id is None and episode_id is None:
        raise ValidationError("prediction_id or episode_id is required")

    now = as_utc(now) if now else utc_now()

    query = Comment.query
    if prediction_id is not None:
        query = query.filter_by(prediction_id=prediction_id)
    if episode_id is not None:
        query = query.filter_by(episode_id=episode_id)

    comments = [
        c
        for c in query.order_by(Comment.created_at.asc(), Comment.id.asc()).all()
        if c.is_visible_to(viewer_id, now)
    ]

    viewer_votes = {}
    if viewer_id is not None and comments:
        viewer_votes = dict(
            db.session.query(CommentVote.comment_id, CommentVote.value)
            .filter(
                CommentVote.user_id == viewer_id,
                CommentVote.comment_id.in_([c.id for c in comments]),
            )
            .all()
        )

    return [c.to_dict(viewer_vote=viewer_votes.get(c.id, 0)) for c in comments]


def vote_comment(comment_id, user_id, value):
    """Set the user's vote (-1, 0 to remove, +1) and recount the tallies"""
    if isinstance(value, bool) or value not in (-1, 0, 1):
        raise ValidationError("Vote must be -1, 0 or 1", details={"value": value})

    comment = db.session.get(Comment, comment_id)
    if comment is None:
        raise NotFoundError(f"Comment {comment_id} not found")
    if comment.is_deleted:
        raise StateConflictError("Cannot vote on a deleted comment")

    vote = CommentVote.query.filter_by(comment_id=comment.id, user_id=user_id).first()

    try:
        if value == 0:
            if vote:
                db.session.delete(vote)
        elif vote:
            vote.value = value
        else:
            db.session.add(CommentVote(comment_id=comment.id, user_id=user_id, value=value))
        db.session.flush()

        # Recount from vote rows so concurrent votes converge
        comment.upvotes = CommentVote.query.filter_by(comment_id=comment.id, value=1).count()
        comment.downvotes = CommentVote.query.filter_by(comment_id=comment.id, value=-1).count()
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Error voting on comment {comment_id}: {e}", exc_info=True)
        raise

    return {"comment_id": comment.id, "upvotes": comment.upvotes, "downvotes": comment.downvotes}


def delete_comment(comment_id, user_id):
    """Soft delete; only the author may delete"""
    comment = db.session.get(Comment, comment_id)
    if comment is None:
        raise NotFoundError(f"Comment {comment_id} not found")
    if comment.author_user_id != user_id:
        raise AuthorizationError("Only the author can delete this comment")

    if comment.is_deleted:
        return comment

    comment.is_deleted = True
    comment.body = DELETED_BODY
    db.session.commit()
    return comment
