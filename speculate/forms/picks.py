from flask_wtf import FlaskForm
from wtforms import IntegerField, StringField
from wtforms.validators import InputRequired, NumberRange, Optional, Regexp


class MakePickForm(FlaskForm):
    class Meta:
        csrf = False

    option_id = IntegerField(
        "Option", validators=[InputRequired(), NumberRange(min=1)]
    )
    client_local_date = StringField(
        "Client Local Date",
        validators=[
            Optional(),
            Regexp(r"^\d{4}-\d{2}-\d{2}$", message="Date must be YYYY-MM-DD"),
        ],
    )
