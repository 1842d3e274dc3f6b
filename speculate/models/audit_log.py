from datetime import datetime, timezone

from speculate import db
from speculate.utils.timezone_utils import isoformat


class AuditLog(db.Model):
    __tablename__ = "audit_log"

    id = db.Column(db.Integer, primary_key=True)

    # Who did it (NULL for scheduled jobs)
    actor_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    target_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    # Action type and details
    action = db.Column(
        db.String(50), nullable=False
    )  # 'resolve_prediction', 'void_prediction', 'adjust_points', ...
    description = db.Column(db.String(500), nullable=False)

    # Related object IDs for context
    prediction_id = db.Column(db.Integer, db.ForeignKey("predictions.id"), nullable=True)

    # Additional context data (JSON)
    details = db.Column(db.JSON, nullable=True)

    # Timestamps
    created_at = db.Column(
        db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    # Relationships
    actor = db.relationship("User", foreign_keys=[actor_user_id])
    target_user = db.relationship("User", foreign_keys=[target_user_id])

    # Indexes
    __table_args__ = (
        db.Index("idx_audit_actor", "actor_user_id"),
        db.Index("idx_audit_prediction", "prediction_id"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_created", "created_at"),
    )

    def __repr__(self):
        return f"<AuditLog {self.action} by {self.actor_user_id or 'system'}>"

    @staticmethod
    def log_action(action, description, actor_user_id=None, target_user_id=None,
                   prediction_id=None, details=None):
        """Add an audit record to the session (caller commits)"""
        entry = AuditLog(
            action=action,
            description=description,
            actor_user_id=actor_user_id,
            target_user_id=target_user_id,
            prediction_id=prediction_id,
            details=details or {},
        )
        db.session.add(entry)
        return entry

    @staticmethod
    def log_resolution(actor, prediction, total_picks, correct_picks, points_awarded,
                       previous_outcome_id=None):
        """Convenience method for logging a resolution or correction"""
        if previous_outcome_id is not None:
            description = (
                f"Corrected resolution of prediction {prediction.id}: "
                f"option {previous_outcome_id} -> {prediction.outcome_option_id}"
            )
        else:
            description = (
                f"Resolved prediction {prediction.id} as option {prediction.outcome_option_id}"
            )

        return AuditLog.log_action(
            action="resolve_prediction",
            description=description,
            actor_user_id=actor.id if actor else None,
            prediction_id=prediction.id,
            details={
                "outcome_option_id": prediction.outcome_option_id,
                "previous_outcome_option_id": previous_outcome_id,
                "total_picks": total_picks,
                "correct_picks": correct_picks,
                "points_awarded": points_awarded,
            },
        )

    @staticmethod
    def log_void(actor, prediction, refunded_picks, points_refunded):
        return AuditLog.log_action(
            action="void_prediction",
            description=f"Voided prediction {prediction.id}",
            actor_user_id=actor.id if actor else None,
            prediction_id=prediction.id,
            details={
                "refunded_picks": refunded_picks,
                "points_refunded": points_refunded,
            },
        )

    @staticmethod
    def log_adjustment(actor, target_user_id, delta, note):
        return AuditLog.log_action(
            action="adjust_points",
            description=f"Adjusted points for user {target_user_id} by {delta:+d}",
            actor_user_id=actor.id if actor else None,
            target_user_id=target_user_id,
            details={"delta": delta, "note": note},
        )

    def to_dict(self):
        return {
            "id": self.id,
            "action": self.action,
            "description": self.description,
            "actor_user_id": self.actor_user_id,
            "target_user_id": self.target_user_id,
            "prediction_id": self.prediction_id,
            "details": self.details or {},
            "created_at": isoformat(self.created_at),
        }
