from datetime import datetime, timezone

from speculate import db
from speculate.utils.timezone_utils import as_utc, isoformat, utc_now


class Episode(db.Model):
    __tablename__ = "episodes"

    id = db.Column(db.Integer, primary_key=True)

    # Episode identification
    show_id = db.Column(db.Integer, db.ForeignKey("shows.id"), nullable=False)
    season_id = db.Column(db.Integer, db.ForeignKey("seasons.id"), nullable=False)
    season_number = db.Column(db.Integer, nullable=False)
    episode_number = db.Column(db.Integer, nullable=False)
    title = db.Column(db.String(300), nullable=False)
    overview = db.Column(db.Text)

    # Air time drives default lock time and spoiler windows
    air_date_utc = db.Column(db.DateTime(timezone=True))
    runtime_minutes = db.Column(db.Integer)
    has_aired = db.Column(db.Boolean, default=False, nullable=False)

    external_id = db.Column(db.String(50), unique=True, index=True)

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
        db.UniqueConstraint(
            "show_id", "season_number", "episode_number", name="unique_show_episode"
        ),
        db.Index("idx_episode_air_date", "air_date_utc"),
    )

    def __repr__(self):
        return f"<Episode show={self.show_id} S{self.season_number:02d}E{self.episode_number:02d}>"

    @property
    def code(self):
        return f"S{self.season_number:02d}E{self.episode_number:02d}"

    def is_aired(self, now=None):
        """Check if the episode has aired at the given time"""
        if self.air_date_utc is None:
            return bool(self.has_aired)
        now = as_utc(now) if now else utc_now()
        return as_utc(self.air_date_utc) <= now

    def to_dict(self):
        return {
            "id": self.id,
            "show_id": self.show_id,
            "season_id": self.season_id,
            "code": self.code,
            "title": self.title,
            "air_date_utc": isoformat(self.air_date_utc),
            "has_aired": self.has_aired,
        }
