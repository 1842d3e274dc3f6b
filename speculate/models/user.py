from datetime import datetime, timezone

from flask_login import UserMixin

from speculate import db


class User(UserMixin, db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)

    # Stable id handed to us by the identity provider
    external_id = db.Column(db.String(128), unique=True, nullable=False, index=True)

    # Profile information
    handle = db.Column(db.String(30), unique=True, index=True)
    display_name = db.Column(db.String(100))
    avatar_url = db.Column(db.String(500))
    timezone = db.Column(db.String(64))

    # Account status
    is_active = db.Column(db.Boolean, default=True)
    is_moderator = db.Column(db.Boolean, default=False)
    is_admin = db.Column(db.Boolean, default=False)  # Site-wide admin privileges

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
    picks = db.relationship("PredictionPick", backref="user", lazy="dynamic")
    stats = db.relationship("UserStats", backref="user", uselist=False)

    def __repr__(self):
        return f"<User {self.handle or self.external_id}>"

    @property
    def can_moderate(self):
        """Moderators and admins may lock, resolve and void predictions"""
        return bool(self.is_moderator or self.is_admin)

    @property
    def name(self):
        return self.display_name or self.handle or f"user-{self.id}"

    def to_dict(self):
        return {
            "id": self.id,
            "handle": self.handle,
            "display_name": self.name,
            "avatar_url": self.avatar_url,
        }
