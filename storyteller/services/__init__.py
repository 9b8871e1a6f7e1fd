"""Service layer for the story generation pipeline."""

from __future__ import annotations

from .completion import (  # noqa: F401
    CompletionError,
    GenerationCancelled,
    LiveCompletionGateway,
    MockCompletionGateway,
    build_completion_gateway,
)
from .story_generation import (  # noqa: F401
    GenerationStage,
    StoryGenerationService,
    is_story_finished,
)
from .story_markup import parse_outline  # noqa: F401

__all__ = [
    "CompletionError",
    "GenerationCancelled",
    "GenerationStage",
    "LiveCompletionGateway",
    "MockCompletionGateway",
    "StoryGenerationService",
    "build_completion_gateway",
    "is_story_finished",
    "parse_outline",
]
