from flask_wtf import FlaskForm
from wtforms import FloatField, IntegerField, SelectField, StringField
from wtforms.validators import DataRequired, InputRequired, Length, NumberRange, Optional

from speculate.models.prediction import PREDICTION_KINDS, PREDICTION_SCOPES, RESOLVER_TYPES


class CreatePredictionForm(FlaskForm):
    class Meta:
        csrf = False

    show_id = IntegerField("Show", validators=[InputRequired(), NumberRange(min=1)])
    title = StringField(
        "Title",
        validators=[
            DataRequired(),
            Length(min=3, max=300, message="Title must be between 3 and 300 characters"),
        ],
    )
    scope = SelectField(
        "Scope", choices=[(s, s) for s in PREDICTION_SCOPES], validators=[DataRequired()]
    )
    kind = SelectField(
        "Kind", choices=[(k, k) for k in PREDICTION_KINDS], validators=[DataRequired()]
    )
    episode_id = IntegerField("Episode", validators=[Optional()])
    season_id = IntegerField("Season", validators=[Optional()])
    lock_at = StringField("Lock At", validators=[Optional()])
    template_key = StringField("Template", validators=[Optional(), Length(max=50)])


class ResolvePredictionForm(FlaskForm):
    class Meta:
        csrf = False

    winning_option_id = IntegerField(
        "Winning Option", validators=[InputRequired(), NumberRange(min=1)]
    )
    resolver_type = SelectField(
        "Resolver Type", choices=[(r, r) for r in RESOLVER_TYPES], default="manual"
    )
    confidence = FloatField("Confidence", validators=[Optional(), NumberRange(min=0, max=1)])


class VoidPredictionForm(FlaskForm):
    class Meta:
        csrf = False

    reason = StringField("Reason", validators=[Optional(), Length(max=500)])
