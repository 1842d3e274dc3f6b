import logging
from datetime import datetime, timezone

from speculate import db
from speculate.utils.timezone_utils import isoformat

logger = logging.getLogger(__name__)

LEADERBOARD_KINDS = ("daily", "weekly", "global")


class Leaderboard(db.Model):
    """Ranked snapshot for one period.

    One row per (kind, period_key); recomputing a period replaces its entries
    while snapshots of other periods are kept as history.
    """

    __tablename__ = "leaderboards"

    id = db.Column(db.Integer, primary_key=True)
    kind = db.Column(db.String(10), nullable=False)
    period_key = db.Column(db.String(20), nullable=False)

    # [{"user_id", "rank", "score", "rating"}, ...] ordered by rank
    entries = db.Column(db.JSON, nullable=False, default=list)

    # Snapshot metadata
    created_at = db.Column(
        db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.UniqueConstraint("kind", "period_key", name="unique_leaderboard_period"),
        db.Index("idx_leaderboard_kind_updated", "kind", "updated_at"),
    )

    def __repr__(self):
        return f"<Leaderboard {self.kind} {self.period_key} ({len(self.entries or [])} entries)>"

    @staticmethod
    def upsert(kind, period_key, entries, now=None):
        """Create or replace the snapshot for an exact (kind, period_key)"""
        now = now or datetime.now(timezone.utc)
        board = Leaderboard.query.filter_by(kind=kind, period_key=period_key).first()

        if board:
            board.entries = entries
            board.updated_at = now
            logger.info(f"Updated {kind} leaderboard {period_key} with {len(entries)} entries")
        else:
            board = Leaderboard(
                kind=kind,
                period_key=period_key,
                entries=entries,
                created_at=now,
                updated_at=now,
            )
            db.session.add(board)
            logger.info(f"Created {kind} leaderboard {period_key} with {len(entries)} entries")

        return board

    @staticmethod
    def latest(kind):
        return (
            Leaderboard.query.filter_by(kind=kind)
            .order_by(Leaderboard.updated_at.desc(), Leaderboard.id.desc())
            .first()
        )

    def to_dict(self):
        return {
            "kind": self.kind,
            "period_key": self.period_key,
            "entries": self.entries or [],
            "as_of": isoformat(self.updated_at),
        }
