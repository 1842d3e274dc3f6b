from datetime import datetime, timezone

from speculate import db
from speculate.utils.timezone_utils import as_utc, isoformat, utc_now

PREDICTION_SCOPES = ("episode", "season", "show")
PREDICTION_KINDS = ("binary", "multiple_choice")
RESOLVER_TYPES = ("auto", "assisted", "manual")

# State machine: open -> locked -> resolved | void (open may also go straight
# to resolved or void). resolved and void are terminal; a resolved prediction
# may only be re-resolved as a correction.
STATE_OPEN = "open"
STATE_LOCKED = "locked"
STATE_RESOLVED = "resolved"
STATE_VOID = "void"
PREDICTION_STATES = (STATE_OPEN, STATE_LOCKED, STATE_RESOLVED, STATE_VOID)
TERMINAL_STATES = (STATE_RESOLVED, STATE_VOID)


class Prediction(db.Model):
    __tablename__ = "predictions"

    id = db.Column(db.Integer, primary_key=True)

    # Authoring
    author_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    template_key = db.Column(db.String(50), nullable=False, default="YES_NO")
    params = db.Column(db.JSON, nullable=True)
    title = db.Column(db.String(300), nullable=False)

    # What the prediction is about
    scope = db.Column(db.String(20), nullable=False)
    show_id = db.Column(db.Integer, db.ForeignKey("shows.id"), nullable=False)
    season_id = db.Column(db.Integer, db.ForeignKey("seasons.id"), nullable=True)
    episode_id = db.Column(db.Integer, db.ForeignKey("episodes.id"), nullable=True)

    kind = db.Column(db.String(20), nullable=False)

    # Lifecycle
    state = db.Column(db.String(20), nullable=False, default=STATE_OPEN)
    lock_at = db.Column(db.DateTime(timezone=True), nullable=False)
    resolved_at = db.Column(db.DateTime(timezone=True))
    outcome_option_id = db.Column(
        db.Integer,
        db.ForeignKey("prediction_options.id", use_alter=True),
        nullable=True,
    )
    confidence = db.Column(db.Float)
    resolver_type = db.Column(db.String(20))

    # Aggregates
    picks_count = db.Column(db.Integer, default=0, nullable=False)

    # Moderation
    is_hidden = db.Column(db.Boolean, default=False, nullable=False)

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
    options = db.relationship(
        "PredictionOption",
        backref="prediction",
        foreign_keys="PredictionOption.prediction_id",
        order_by="PredictionOption.ordinal",
        cascade="all, delete-orphan",
    )
    picks = db.relationship("PredictionPick", backref="prediction", lazy="dynamic")
    show = db.relationship("Show", foreign_keys=[show_id])
    episode = db.relationship("Episode", foreign_keys=[episode_id])

    __table_args__ = (
        db.Index("idx_prediction_state_lock", "state", "lock_at"),
        db.Index("idx_prediction_episode_state", "episode_id", "state"),
        db.Index("idx_prediction_show_state", "show_id", "state"),
        db.CheckConstraint(
            "(state = 'resolved') = (outcome_option_id IS NOT NULL)",
            name="outcome_iff_resolved",
        ),
    )

    def __repr__(self):
        return f"<Prediction {self.id} {self.state}>"

    @property
    def is_terminal(self):
        return self.state in TERMINAL_STATES

    def hours_until_lock(self, now=None):
        """Hours left before lock (never negative)"""
        now = as_utc(now) if now else utc_now()
        seconds = (as_utc(self.lock_at) - now).total_seconds()
        return max(0.0, seconds / 3600.0)

    def is_past_lock(self, now=None):
        now = as_utc(now) if now else utc_now()
        return now >= as_utc(self.lock_at)

    def get_option(self, option_id):
        """Return the option with this id if it belongs to this prediction"""
        for option in self.options:
            if option.id == option_id:
                return option
        return None

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "template_key": self.template_key,
            "params": self.params or {},
            "scope": self.scope,
            "kind": self.kind,
            "state": self.state,
            "show_id": self.show_id,
            "season_id": self.season_id,
            "episode_id": self.episode_id,
            "lock_at": isoformat(self.lock_at),
            "resolved_at": isoformat(self.resolved_at),
            "outcome_option_id": self.outcome_option_id,
            "resolver_type": self.resolver_type,
            "confidence": self.confidence,
            "picks_count": self.picks_count,
        }


class PredictionOption(db.Model):
    """One selectable answer. Immutable once created."""

    __tablename__ = "prediction_options"

    id = db.Column(db.Integer, primary_key=True)
    prediction_id = db.Column(
        db.Integer, db.ForeignKey("predictions.id"), nullable=False
    )
    label = db.Column(db.String(200), nullable=False)
    value = db.Column(db.String(100), nullable=False)
    ordinal = db.Column(db.Integer, nullable=False)

    created_at = db.Column(
        db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        db.UniqueConstraint("prediction_id", "ordinal", name="unique_option_ordinal"),
        db.UniqueConstraint("prediction_id", "value", name="unique_option_value"),
    )

    def __repr__(self):
        return f"<PredictionOption {self.prediction_id}:{self.ordinal} {self.value}>"

    def to_dict(self):
        return {
            "id": self.id,
            "label": self.label,
            "value": self.value,
            "ordinal": self.ordinal,
        }


class PredictionResolutionEvidence(db.Model):
    __tablename__ = "prediction_resolution_evidence"

    SOURCE_TYPES = ("SUBTITLE", "CAST", "RECAP", "OFFICIAL", "OTHER")

    id = db.Column(db.Integer, primary_key=True)
    prediction_id = db.Column(
        db.Integer, db.ForeignKey("predictions.id"), nullable=False, index=True
    )
    source_type = db.Column(db.String(20), nullable=False)
    url = db.Column(db.String(1000))
    snippet = db.Column(db.Text)
    timestamp_sec = db.Column(db.Integer)
    added_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    created_at = db.Column(
        db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    def to_dict(self):
        return {
            "id": self.id,
            "source_type": self.source_type,
            "url": self.url,
            "snippet": self.snippet,
            "timestamp_sec": self.timestamp_sec,
            "created_at": isoformat(self.created_at),
        }
