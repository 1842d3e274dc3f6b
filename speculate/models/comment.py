from datetime import datetime, timezone

from speculate import db
from speculate.utils.timezone_utils import as_utc, isoformat, utc_now

DELETED_BODY = "[deleted]"


class Comment(db.Model):
    __tablename__ = "comments"

    id = db.Column(db.Integer, primary_key=True)
    author_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)

    # Target (a prediction or an episode)
    prediction_id = db.Column(db.Integer, db.ForeignKey("predictions.id"), nullable=True)
    episode_id = db.Column(db.Integer, db.ForeignKey("episodes.id"), nullable=True)
    parent_id = db.Column(db.Integer, db.ForeignKey("comments.id"), nullable=True)

    body = db.Column(db.Text, nullable=False)

    # Spoiler gate: hidden from other viewers until visible_after
    is_spoiler = db.Column(db.Boolean, default=False, nullable=False)
    visible_after = db.Column(db.DateTime(timezone=True), nullable=True)

    # Vote tallies (recounted from CommentVote rows)
    upvotes = db.Column(db.Integer, default=0, nullable=False)
    downvotes = db.Column(db.Integer, default=0, nullable=False)

    is_deleted = db.Column(db.Boolean, default=False, nullable=False)

    # Timestamps
    created_at = db.Column(
        db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    # Relationships
    author = db.relationship("User", foreign_keys=[author_user_id])
    votes = db.relationship(
        "CommentVote", backref="comment", lazy="dynamic", cascade="all, delete-orphan"
    )

    __table_args__ = (
        db.Index("idx_comment_prediction", "prediction_id", "created_at"),
        db.Index("idx_comment_episode", "episode_id", "created_at"),
        db.CheckConstraint(
            "prediction_id IS NOT NULL OR episode_id IS NOT NULL",
            name="comment_has_target",
        ),
    )

    def __repr__(self):
        return f"<Comment {self.id} by {self.author_user_id}>"

    @property
    def score(self):
        return (self.upvotes or 0) - (self.downvotes or 0)

    def is_visible_to(self, viewer_id, now=None):
        """Spoilers stay hidden from everyone but the author until visible_after"""
        if viewer_id is not None and viewer_id == self.author_user_id:
            return True
        if self.visible_after is None:
            return True
        now = as_utc(now) if now else utc_now()
        return now >= as_utc(self.visible_after)

    def to_dict(self, viewer_vote=None):
        return {
            "id": self.id,
            "author": self.author.to_dict() if self.author else None,
            "prediction_id": self.prediction_id,
            "episode_id": self.episode_id,
            "parent_id": self.parent_id,
            "body": self.body,
            "is_spoiler": self.is_spoiler,
            "visible_after": isoformat(self.visible_after),
            "upvotes": self.upvotes,
            "downvotes": self.downvotes,
            "score": self.score,
            "is_deleted": self.is_deleted,
            "viewer_vote": viewer_vote,
            "created_at": isoformat(self.created_at),
        }


class CommentVote(db.Model):
    __tablename__ = "comment_votes"

    id = db.Column(db.Integer, primary_key=True)
    comment_id = db.Column(db.Integer, db.ForeignKey("comments.id"), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    value = db.Column(db.Integer, nullable=False)  # -1 or +1

    created_at = db.Column(
        db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        db.UniqueConstraint("comment_id", "user_id", name="unique_comment_vote"),
        db.CheckConstraint("value IN (-1, 1)", name="vote_value"),
    )
