from flask_wtf import FlaskForm
from wtforms import SubmitField, TextAreaField
from wtforms.validators import InputRequired, Length


class StoryPromptForm(FlaskForm):
    prompt = TextAreaField(
        "Story prompt",
        validators=[InputRequired(message="Please enter a story prompt."), Length(max=2000)],
        description="For example: A cat in a hat goes to Neverland",
    )
    submit = SubmitField("Generate story")
