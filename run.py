from speculate import create_app, db
from speculate.models import (
    Episode,
    PointsLedgerEntry,
    Prediction,
    PredictionPick,
    Show,
    User,
    UserStats,
)

app = create_app()


@app.shell_context_processor
def make_shell_context():
    return {
        "db": db,
        "User": User,
        "Show": Show,
        "Episode": Episode,
        "Prediction": Prediction,
        "PredictionPick": PredictionPick,
        "PointsLedgerEntry": PointsLedgerEntry,
        "UserStats": UserStats,
    }


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=5000, debug=True)
