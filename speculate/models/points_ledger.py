from datetime import datetime, timezone

from speculate import db
from speculate.utils.timezone_utils import isoformat

REASON_PICK_CORRECT = "pick_correct"
REASON_EARLY_BONUS = "early_bonus"
REASON_CONTRARIAN_BONUS = "contrarian_bonus"
REASON_STREAK_BONUS = "streak_bonus"
REASON_TOURNAMENT_PAYOUT = "tournament_payout"
REASON_ADMIN_ADJUSTMENT = "admin_adjustment"
REASON_REFUND = "refund"
REASON_SPEND = "spend"
REASON_RESOLUTION_CORRECTION = "resolution_correction"

LEDGER_REASONS = (
    REASON_PICK_CORRECT,
    REASON_EARLY_BONUS,
    REASON_CONTRARIAN_BONUS,
    REASON_STREAK_BONUS,
    REASON_TOURNAMENT_PAYOUT,
    REASON_ADMIN_ADJUSTMENT,
    REASON_REFUND,
    REASON_SPEND,
    REASON_RESOLUTION_CORRECTION,
)


class PointsLedgerEntry(db.Model):
    """Append-only record of a single point change.

    Entries are never updated or deleted; a user's balance is the sum of
    their entries.
    """

    __tablename__ = "points_ledger"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    points = db.Column(db.Integer, nullable=False)  # signed
    reason = db.Column(db.String(40), nullable=False)

    # Optional links for context
    prediction_id = db.Column(db.Integer, db.ForeignKey("predictions.id"), nullable=True)
    pick_id = db.Column(db.Integer, db.ForeignKey("prediction_picks.id"), nullable=True)
    tournament_id = db.Column(db.String(64), nullable=True)

    entry_metadata = db.Column(db.JSON, nullable=True)

    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    user = db.relationship("User", backref=db.backref("ledger_entries", lazy="dynamic"))

    __table_args__ = (
        db.Index("idx_ledger_user_created", "user_id", "created_at"),
        db.Index("idx_ledger_reason_created", "reason", "created_at"),
        db.Index("idx_ledger_pick", "pick_id"),
        db.Index("idx_ledger_prediction", "prediction_id"),
    )

    def __repr__(self):
        return f"<PointsLedgerEntry user={self.user_id} {self.points:+d} {self.reason}>"

    @staticmethod
    def record(user_id, points, reason, prediction_id=None, pick_id=None,
               tournament_id=None, metadata=None, now=None):
        """Add a ledger entry to the session (caller commits)"""
        if reason not in LEDGER_REASONS:
            raise ValueError(f"Unknown ledger reason: {reason}")

        entry = PointsLedgerEntry(
            user_id=user_id,
            points=int(points),
            reason=reason,
            prediction_id=prediction_id,
            pick_id=pick_id,
            tournament_id=tournament_id,
            entry_metadata=metadata or {},
            created_at=now or datetime.now(timezone.utc),
        )
        db.session.add(entry)
        return entry

    @staticmethod
    def paid_for_pick(pick_id):
        """Net points already paid out for a pick's outcome"""
        total = (
            db.session.query(db.func.coalesce(db.func.sum(PointsLedgerEntry.points), 0))
            .filter(
                PointsLedgerEntry.pick_id == pick_id,
                PointsLedgerEntry.reason.in_(
                    (REASON_PICK_CORRECT, REASON_RESOLUTION_CORRECTION)
                ),
            )
            .scalar()
        )
        return int(total or 0)

    @staticmethod
    def has_entry(pick_id, reason):
        return (
            db.session.query(PointsLedgerEntry.id)
            .filter_by(pick_id=pick_id, reason=reason)
            .first()
            is not None
        )

    @staticmethod
    def balance_for(user_id):
        total = (
            db.session.query(db.func.coalesce(db.func.sum(PointsLedgerEntry.points), 0))
            .filter(PointsLedgerEntry.user_id == user_id)
            .scalar()
        )
        return int(total or 0)

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "points": self.points,
            "reason": self.reason,
            "prediction_id": self.prediction_id,
            "pick_id": self.pick_id,
            "tournament_id": self.tournament_id,
            "metadata": self.entry_metadata or {},
            "created_at": isoformat(self.created_at),
        }
