from flask_wtf import FlaskForm
from wtforms import IntegerField, StringField
from wtforms.validators import DataRequired, InputRequired, Length, NumberRange, Optional


class AdjustPointsForm(FlaskForm):
    class Meta:
        csrf = False

    user_id = IntegerField("User", validators=[InputRequired(), NumberRange(min=1)])
    delta = IntegerField("Delta", validators=[InputRequired()])
    note = StringField(
        "Note",
        validators=[DataRequired(), Length(max=500, message="Note cannot exceed 500 characters")],
    )


class SpendPointsForm(FlaskForm):
    class Meta:
        csrf = False

    amount = IntegerField(
        "Amount",
        validators=[InputRequired(), NumberRange(min=1, message="Amount must be positive")],
    )
    note = StringField("Note", validators=[Optional(), Length(max=500)])


class TournamentPayoutForm(FlaskForm):
    class Meta:
        csrf = False

    tournament_id = StringField("Tournament", validators=[DataRequired(), Length(max=64)])
