from __future__ import annotations

from flask import current_app, flash, jsonify, render_template, request

from ..extensions import csrf
from ..models import GenerationSuccess
from ..services.runtime import get_completion_gateway, get_story_service
from . import bp
from .forms import StoryPromptForm


@bp.route("/", methods=["GET", "POST"])
def index():
    form = StoryPromptForm()
    story = None
    used_fallback = False

    if form.validate_on_submit():
        try:
            result = get_story_service().generate_story(form.prompt.data)
        except Exception:  # pragma: no cover - defensive logging for unexpected states
            current_app.logger.exception("Unexpected error while generating a story")
            flash("We couldn't generate a story right now. Please try again.", "danger")
        else:
            if isinstance(result, GenerationSuccess):
                story = result.story
                used_fallback = result.used_fallback
                if used_fallback:
                    flash("No text generator is configured; showing the built-in sample story.", "info")
            else:
                flash(result.message, "danger")
    elif form.is_submitted():
        for errors in form.errors.values():
            for message in errors:
                flash(message, "warning")

    return render_template("main/index.html", form=form, story=story, used_fallback=used_fallback)


@bp.route("/api/stories", methods=["POST"])
@csrf.exempt
def create_story():
    payload = request.get_json(silent=True) or {}
    prompt = payload.get("prompt")
    if not isinstance(prompt, str) or not prompt.strip():
        return jsonify({"error": "A story prompt is required."}), 400

    try:
        result = get_story_service().generate_story(prompt)
    except Exception as exc:  # pragma: no cover - defensive
        current_app.logger.exception("Unexpected error while generating a story")
        return (
            jsonify(
                {
                    "error": "The story generator could not be started.",
                    "detail": str(exc),
                }
            ),
            500,
        )

    if not isinstance(result, GenerationSuccess):
        return jsonify({"error": result.message}), 502

    return jsonify({"story": result.story.to_dict(), "used_fallback": result.used_fallback})


@bp.route("/api/health")
def health():
    gateway = get_completion_gateway()
    return jsonify(
        {
            "mock_mode": gateway.is_mock_mode(),
            "backend": getattr(gateway, "backend_name", type(gateway).__name__),
            "device": gateway.compute_device(),
        }
    )
