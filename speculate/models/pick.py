from datetime import datetime, timezone

from speculate import db
from speculate.utils.timezone_utils import isoformat


class PredictionPick(db.Model):
    """A user's one-time choice for a prediction.

    At most one pick exists per (user, prediction) and it is never changed or
    deleted. The community probability and potential points are frozen when
    the pick is made; earned points are written at resolution.
    """

    __tablename__ = "prediction_picks"

    id = db.Column(db.Integer, primary_key=True)

    # Pick identification
    prediction_id = db.Column(
        db.Integer, db.ForeignKey("predictions.id"), nullable=False
    )
    option_id = db.Column(
        db.Integer, db.ForeignKey("prediction_options.id"), nullable=False
    )
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    picked_at = db.Column(db.DateTime(timezone=True), nullable=False)
    client_local_date = db.Column(db.String(10))  # YYYY-MM-DD as seen by the client

    # Snapshots taken at pick time
    pre_lock_community_probability = db.Column(db.Float, nullable=False)
    potential_points = db.Column(db.Integer, nullable=False)

    # Results (written at resolution)
    earned_points = db.Column(db.Integer, default=0, nullable=False)

    # What the stats aggregator has already applied for this pick, so that
    # redelivered or corrected updates only apply the difference
    stats_pick_applied = db.Column(db.Boolean, default=False, nullable=False)
    stats_points_applied = db.Column(db.Integer, default=0, nullable=False)
    stats_correct_applied = db.Column(db.Boolean, default=False, nullable=False)

    created_at = db.Column(
        db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    # Relationships
    option = db.relationship("PredictionOption", foreign_keys=[option_id])

    __table_args__ = (
        db.UniqueConstraint("user_id", "prediction_id", name="unique_user_prediction_pick"),
        db.Index("idx_pick_prediction", "prediction_id"),
        db.Index("idx_pick_user", "user_id"),
        db.Index("idx_pick_option", "option_id"),
        db.CheckConstraint(
            "potential_points >= 0 AND potential_points <= 200",
            name="potential_points_range",
        ),
    )

    def __repr__(self):
        return f"<PredictionPick user_id={self.user_id} prediction_id={self.prediction_id} option_id={self.option_id}>"

    @property
    def is_correct(self):
        """True/False once the prediction is resolved, otherwise None"""
        prediction = self.prediction
        if prediction is None or prediction.outcome_option_id is None:
            return None
        return self.option_id == prediction.outcome_option_id

    def to_dict(self):
        return {
            "id": self.id,
            "prediction_id": self.prediction_id,
            "option_id": self.option_id,
            "user_id": self.user_id,
            "picked_at": isoformat(self.picked_at),
            "pre_lock_community_probability": self.pre_lock_community_probability,
            "potential_points": self.potential_points,
            "earned_points": self.earned_points,
            "is_correct": self.is_correct,
        }
