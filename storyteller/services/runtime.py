"""Per-application wiring of the story pipeline."""

from __future__ import annotations

from flask import current_app

from .completion import build_completion_gateway
from .story_generation import StoryGenerationService

GATEWAY_CACHE_KEY = "_COMPLETION_GATEWAY_INSTANCE"


def get_completion_gateway():
    """Return the application's completion gateway, building it on first use.

    One gateway, and so one loaded model, is shared by every request of an
    application.
    """

    app = current_app
    if GATEWAY_CACHE_KEY in app.config:
        return app.config[GATEWAY_CACHE_KEY]

    gateway = build_completion_gateway(app.config)
    app.logger.info("Story backend ready: %s", getattr(gateway, "backend_name", type(gateway).__name__))
    app.config[GATEWAY_CACHE_KEY] = gateway
    return gateway


def get_story_service() -> StoryGenerationService:
    return StoryGenerationService(get_completion_gateway(), logger=current_app.logger)
