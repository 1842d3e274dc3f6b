from speculate import db  # noqa: F401 - imported for model imports

from .audit_log import AuditLog
from .comment import Comment, CommentVote
from .episode import Episode
from .leaderboard import Leaderboard
from .option_stats import PredictionOptionStats
from .pick import PredictionPick
from .points_ledger import PointsLedgerEntry
from .prediction import Prediction, PredictionOption, PredictionResolutionEvidence
from .season import Season
from .show import Show
from .user import User
from .user_stats import UserShowStats, UserStats

__all__ = [
    "User",
    "Show",
    "Season",
    "Episode",
    "Prediction",
    "PredictionOption",
    "PredictionResolutionEvidence",
    "PredictionPick",
    "PredictionOptionStats",
    "PointsLedgerEntry",
    "UserStats",
    "UserShowStats",
    "Leaderboard",
    "AuditLog",
    "Comment",
    "CommentVote",
]
