from flask_wtf import FlaskForm
from wtforms import IntegerField, TextAreaField
from wtforms.validators import AnyOf, DataRequired, Length, Optional


class CommentForm(FlaskForm):
    class Meta:
        csrf = False

    body = TextAreaField(
        "Comment",
        validators=[
            DataRequired(),
            Length(max=5000, message="Comment cannot exceed 5000 characters"),
        ],
    )
    prediction_id = IntegerField("Prediction", validators=[Optional()])
    episode_id = IntegerField("Episode", validators=[Optional()])
    parent_id = IntegerField("Reply To", validators=[Optional()])


class VoteForm(FlaskForm):
    class Meta:
        csrf = False

    value = IntegerField(
        "Vote", validators=[AnyOf([-1, 0, 1], message="Vote must be -1, 0 or 1")]
    )
