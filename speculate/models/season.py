from datetime import datetime, timezone

from speculate import db


class Season(db.Model):
    __tablename__ = "seasons"

    id = db.Column(db.Integer, primary_key=True)
    show_id = db.Column(db.Integer, db.ForeignKey("shows.id"), nullable=False)
    season_number = db.Column(db.Integer, nullable=False)
    title = db.Column(db.String(200))
    episode_count = db.Column(db.Integer)

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

    # Relationships
    episodes = db.relationship(
        "Episode", backref="season", lazy="dynamic", cascade="all, delete-orphan"
    )

    __table_args__ = (
        db.UniqueConstraint("show_id", "season_number", name="unique_show_season"),
    )

    def __repr__(self):
        return f"<Season show={self.show_id} S{self.season_number:02d}>"

    def to_dict(self):
        return {
            "id": self.id,
            "show_id": self.show_id,
            "season_number": self.season_number,
            "title": self.title,
            "episode_count": self.episode_count,
        }
