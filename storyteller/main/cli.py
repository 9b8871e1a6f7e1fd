import click

from ..models import GenerationSuccess
from ..services.runtime import get_story_service
from . import bp


@bp.cli.command("generate-story")
@click.argument("prompt")
def generate_story_command(prompt: str) -> None:
    """Generate a story for PROMPT and print it."""

    result = get_story_service().generate_story(prompt)
    if not isinstance(result, GenerationSuccess):
        raise click.ClickException(result.message)

    outline = result.story.outline
    if result.used_fallback:
        click.echo("(mock mode: no text generator configured)")
    if outline.characters:
        click.echo("Characters: " + ", ".join(f"{c.name} ({c.role})" for c in outline.characters))
    if outline.settings:
        click.echo("Settings: " + ", ".join(setting.name for setting in outline.settings))
    if outline.plot is not None and outline.plot.problem:
        click.echo(f"Problem: {outline.plot.problem}")
    click.echo("")
    click.echo(result.story.full_text)
