from datetime import datetime, timezone

from speculate import db
from speculate.utils.scoring import calculate_level


def _accuracy(correct, total):
    return correct / total if total > 0 else 0.0


class UserStats(db.Model):
    """Denormalized per-user totals.

    Maintained incrementally by the stats aggregator (picks, accuracy,
    streaks) and by the points service (balance, lifetime). The ledger and
    pick rows stay the source of truth; see `rebuild_user_stats`.
    """

    __tablename__ = "user_stats"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, unique=True)

    # Picks
    total_picks = db.Column(db.Integer, default=0, nullable=False)
    correct_picks = db.Column(db.Integer, default=0, nullable=False)
    accuracy = db.Column(db.Float, default=0.0, nullable=False)

    # Points
    points_balance = db.Column(db.Integer, default=0, nullable=False)
    lifetime_points = db.Column(db.Integer, default=0, nullable=False)

    # Activity streak, in calendar days
    current_streak = db.Column(db.Integer, default=0, nullable=False)
    best_streak = db.Column(db.Integer, default=0, nullable=False)
    last_active_day = db.Column(db.String(10))  # YYYY-MM-DD

    # Timestamps
    created_at = db.Column(
        db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.Index("idx_user_stats_lifetime", "lifetime_points"),
        db.Index("idx_user_stats_last_active", "last_active_day"),
    )

    def __repr__(self):
        return f"<UserStats user={self.user_id} balance={self.points_balance}>"

    @staticmethod
    def get_or_create(user_id, for_update=False):
        """Fetch a user's stats row, inserting an empty one if missing.

        With for_update the row is locked until the caller commits and its
        attributes are reloaded from the database.
        """
        query = UserStats.query.filter_by(user_id=user_id)
        if for_update:
            query = query.with_for_update().populate_existing()
        stats = query.first()
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
            db.session.add(stats)
            db.session.flush()
        return stats

    @staticmethod
    def _apply(user_id, values, *conditions):
        stats = UserStats.get_or_create(user_id)
        result = db.session.execute(
            db.update(UserStats)
            .where(UserStats.user_id == user_id, *conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        db.session.expire(stats, ["points_balance", "lifetime_points", "updated_at"])
        return stats, result.rowcount

    @staticmethod
    def apply_points(user_id, delta, lifetime_delta=None):
        """Atomically move a user's balance by delta.

        Lifetime moves by lifetime_delta, which defaults to the gain (negative
        deltas leave lifetime alone). Returns the stats row.
        """
        if lifetime_delta is None:
            lifetime_delta = max(delta, 0)
        stats, _ = UserStats._apply(
            user_id,
            {
                "points_balance": UserStats.points_balance + delta,
                "lifetime_points": UserStats.lifetime_points + lifetime_delta,
            },
        )
        return stats

    @staticmethod
    def try_spend(user_id, amount):
        """Deduct amount only if the balance covers it.

        Returns (stats, spent). The balance check and the deduction are one
        UPDATE, so concurrent spends cannot overdraw.
        """
        stats, rowcount = UserStats._apply(
            user_id,
            {"points_balance": UserStats.points_balance - amount},
            UserStats.points_balance >= amount,
        )
        return stats, rowcount == 1

    def refresh_accuracy(self):
        self.accuracy = _accuracy(self.correct_picks or 0, self.total_picks or 0)

    def to_dict(self):
        return {
            "user_id": self.user_id,
            "total_picks": self.total_picks,
            "correct_picks": self.correct_picks,
            "accuracy": round(self.accuracy or 0.0, 4),
            "points_balance": self.points_balance,
            "lifetime_points": self.lifetime_points,
            "current_streak": self.current_streak,
            "best_streak": self.best_streak,
            "last_active_day": self.last_active_day,
            "level": calculate_level(self.lifetime_points or 0),
        }


class UserShowStats(db.Model):
    __tablename__ = "user_show_stats"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    show_id = db.Column(db.Integer, db.ForeignKey("shows.id"), nullable=False)

    total_picks = db.Column(db.Integer, default=0, nullable=False)
    correct_picks = db.Column(db.Integer, default=0, nullable=False)
    accuracy = db.Column(db.Float, default=0.0, nullable=False)

    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    show = db.relationship("Show")

    __table_args__ = (
        db.UniqueConstraint("user_id", "show_id", name="unique_user_show_stats"),
        db.Index("idx_user_show_stats_user", "user_id"),
    )

    @staticmethod
    def get_or_create(user_id, show_id, for_update=False):
        query = UserShowStats.query.filter_by(user_id=user_id, show_id=show_id)
        if for_update:
            query = query.with_for_update().populate_existing()
        row = query.first()
        if row is None:
            row = UserShowStats(
                user_id=user_id,
                show_id=show_id,
                total_picks=0,
                correct_picks=0,
                accuracy=0.0,
            )
            db.session.add(row)
            db.session.flush()
        return row

    def refresh_accuracy(self):
        self.accuracy = _accuracy(self.correct_picks or 0, self.total_picks or 0)

    def to_dict(self):
        return {
            "show_id": self.show_id,
            "show_title": self.show.title if self.show else None,
            "total_picks": self.total_picks,
            "correct_picks": self.correct_picks,
            "accuracy": round(self.accuracy or 0.0, 4),
        }
