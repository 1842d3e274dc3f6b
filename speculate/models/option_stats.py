import logging
from datetime import datetime, timezone

from speculate import db

logger = logging.getLogger(__name__)


class PredictionOptionStats(db.Model):
    """Live pick counter per option.

    Incremented on every pick; `recount` rebuilds the counters from the pick
    rows so they converge even if an increment was lost.
    """

    __tablename__ = "prediction_option_stats"

    id = db.Column(db.Integer, primary_key=True)
    prediction_id = db.Column(
        db.Integer, db.ForeignKey("predictions.id"), nullable=False
    )
    option_id = db.Column(
        db.Integer, db.ForeignKey("prediction_options.id"), nullable=False
    )
    pick_count = db.Column(db.Integer, default=0, nullable=False)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.UniqueConstraint("prediction_id", "option_id", name="unique_prediction_option_stat"),
        db.Index("idx_option_stats_prediction", "prediction_id"),
    )

    def __repr__(self):
        return f"<PredictionOptionStats {self.prediction_id}:{self.option_id} = {self.pick_count}>"

    @staticmethod
    def counts_for(prediction_id):
        """Map option_id -> pick_count for a prediction"""
        rows = PredictionOptionStats.query.filter_by(prediction_id=prediction_id).all()
        return {row.option_id: row.pick_count for row in rows}

    @staticmethod
    def increment(prediction_id, option_id, now=None):
        """Atomically add one pick to an option's counter"""
        now = now or datetime.now(timezone.utc)
        result = db.session.execute(
            db.update(PredictionOptionStats)
            .where(
                PredictionOptionStats.prediction_id == prediction_id,
                PredictionOptionStats.option_id == option_id,
            )
            .values(
                pick_count=PredictionOptionStats.pick_count + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )

        if result.rowcount == 0:
            # Counter rows are created with the prediction; this covers
            # predictions created before that was the case
            db.session.add(
                PredictionOptionStats(
                    prediction_id=prediction_id,
                    option_id=option_id,
                    pick_count=1,
                    updated_at=now,
                )
            )

    @staticmethod
    def recount(prediction_id):
        """Rebuild counters for a prediction from the pick rows.

        Returns the number of counters that were corrected.
        """
        from .pick import PredictionPick
        from .prediction import Prediction

        prediction = db.session.get(Prediction, prediction_id)
        if prediction is None:
            return 0

        actual = dict(
            db.session.query(PredictionPick.option_id, db.func.count(PredictionPick.id))
            .filter(PredictionPick.prediction_id == prediction_id)
            .group_by(PredictionPick.option_id)
            .all()
        )

        existing = {
            row.option_id: row
            for row in PredictionOptionStats.query.filter_by(
                prediction_id=prediction_id
            ).all()
        }

        corrected = 0
        for option in prediction.options:
            count = actual.get(option.id, 0)
            row = existing.get(option.id)
            if row is None:
                db.session.add(
                    PredictionOptionStats(
                        prediction_id=prediction_id,
                        option_id=option.id,
                        pick_count=count,
                    )
                )
                corrected += 1
            elif row.pick_count != count:
                logger.warning(
                    f"Option stats drift on prediction {prediction_id} option {option.id}: "
                    f"counter={row.pick_count} actual={count}"
                )
                row.pick_count = count
                corrected += 1

        total = sum(actual.values())
        if prediction.picks_count != total:
            prediction.picks_count = total

        return corrected
