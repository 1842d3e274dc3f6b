from datetime import datetime, timezone

from speculate import db

SHOW_STATUSES = ("running", "ended", "hiatus", "unknown")


class Show(db.Model):
    __tablename__ = "shows"

    id = db.Column(db.Integer, primary_key=True)

    # Show identification
    title = db.Column(db.String(200), nullable=False)
    slug = db.Column(db.String(200), nullable=False, unique=True, index=True)
    overview = db.Column(db.Text)
    network = db.Column(db.String(100))
    first_air_year = db.Column(db.Integer)
    status = db.Column(db.String(20), nullable=False, default="unknown")

    # External IDs from the catalog feed
    external_id = db.Column(db.String(50), unique=True, index=True)

    # Denormalized counters
    predictions_count = db.Column(db.Integer, default=0, nullable=False)

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
    seasons = db.relationship(
        "Season", backref="show", lazy="dynamic", cascade="all, delete-orphan"
    )
    episodes = db.relationship("Episode", backref="show", lazy="dynamic")

    __table_args__ = (
        db.CheckConstraint(
            "status IN ('running', 'ended', 'hiatus', 'unknown')",
            name="valid_show_status",
        ),
    )

    def __repr__(self):
        return f"<Show {self.slug}>"

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "slug": self.slug,
            "network": self.network,
            "status": self.status,
            "first_air_year": self.first_air_year,
            "predictions_count": self.predictions_count,
        }
