"""Outline-then-sections story generation pipeline."""

from __future__ import annotations

import enum
import logging
import threading
from typing import Callable, List, Optional

from ..models import GenerationError, GenerationResult, GenerationSuccess, Outline, Story
from .completion import GenerationCancelled
from .story_markup import parse_outline
from .story_prompts import (
    FIRST_SECTION_MAX_TOKENS,
    OUTLINE_MAX_TOKENS,
    SECTION_MAX_TOKENS,
    build_continuation_prompt,
    build_first_section_prompt,
    build_outline_prompt,
)

MAX_SECTIONS = 5
SECTION_SEPARATOR = "\n\n"
END_OF_STORY_MARKERS = ("the end", "conclusion", "finally")


class GenerationStage(enum.Enum):
    IDLE = "idle"
    GENERATING_OUTLINE = "generating_outline"
    GENERATING_SECTIONS = "generating_sections"
    DONE = "done"
    FAILED = "failed"


class StoryGenerationError(RuntimeError):
    """Raised when the service is wired up incorrectly."""


def is_story_finished(section_text: str) -> bool:
    """Return True when ``section_text`` reads like the last section.

    This is a plain substring heuristic.  Stories that say "finally" early
    stop early, and stories that never say any marker run to the section cap.
    """

    lowered = section_text.casefold()
    return any(marker in lowered for marker in END_OF_STORY_MARKERS)


class StoryGenerationService:
    """Drive one outline request and up to ``MAX_SECTIONS`` section requests.

    Parameters
    ----------
    gateway:
        Completion gateway used for every model call.  Whether it runs in
        mock mode is read once, here.
    logger:
        Destination for stage-by-stage diagnostics.  Defaults to this
        module's logger.
    on_stage_change:
        Optional callback receiving each :class:`GenerationStage` a run
        enters.
    """

    def __init__(
        self,
        gateway,
        *,
        logger: Optional[logging.Logger] = None,
        on_stage_change: Optional[Callable[[GenerationStage], None]] = None,
    ):
        if gateway is None:
            raise StoryGenerationError("A completion gateway is required to generate stories.")
        self.gateway = gateway
        self.logger = logger or logging.getLogger(__name__)
        self.on_stage_change = on_stage_change
        self.mock_mode = bool(gateway.is_mock_mode())
        if self.mock_mode:
            self.logger.warning("Story generation service running in mock mode; no text generator is configured.")
        else:
            self.logger.info("Story generation service initialised with backend: %s",
                             getattr(gateway, "backend_name", type(gateway).__name__))

    def generate_story(self, prompt: str, *, cancel_event: Optional[threading.Event] = None) -> GenerationResult:
        """Generate a complete story for ``prompt``.

        Always returns a result: :class:`GenerationSuccess` with the finished
        story, or :class:`GenerationError` with a message.  Nothing partial is
        ever returned.
        """

        prompt_text = (prompt or "").strip()
        if not prompt_text:
            return GenerationError("A story prompt is required.")

        try:
            self._enter(GenerationStage.IDLE)
            self.logger.info("Starting story generation for prompt: %s", prompt_text)
            outline = self._generate_outline(prompt_text, cancel_event)
            sections = self._generate_sections(outline, prompt_text, cancel_event)
            story = Story.from_sections(outline, tuple(sections))
            self._enter(GenerationStage.DONE)
        except GenerationCancelled as exc:
            self._enter(GenerationStage.FAILED)
            self.logger.info("Story generation cancelled: %s", exc)
            return GenerationError(str(exc))
        except Exception as exc:
            self._enter(GenerationStage.FAILED)
            self.logger.exception("Error generating story")
            detail = str(exc).strip() or "an unexpected error occurred"
            return GenerationError(f"Failed to generate story: {detail}")

        self.logger.info("Story generation completed: %d sections, %d words", len(sections), story.word_count)
        return GenerationSuccess(story=story, used_fallback=self.mock_mode)

    def _generate_outline(self, prompt_text: str, cancel_event: Optional[threading.Event]) -> Outline:
        self._enter(GenerationStage.GENERATING_OUTLINE)
        outline_markup = self.gateway.complete(
            build_outline_prompt(prompt_text),
            OUTLINE_MAX_TOKENS,
            expect_markup=True,
            cancel_event=cancel_event,
        )
        self.logger.debug("Outline generated: %s", outline_markup)

        outline = parse_outline(outline_markup)
        self.logger.info(
            "Outline parsed: %d characters, %d settings",
            len(outline.characters),
            len(outline.settings),
        )
        return outline

    def _generate_sections(
        self,
        outline: Outline,
        prompt_text: str,
        cancel_event: Optional[threading.Event],
    ) -> List[str]:
        self._enter(GenerationStage.GENERATING_SECTIONS)
        sections: List[str] = []

        first_section = self.gateway.complete(
            build_first_section_prompt(outline, prompt_text),
            FIRST_SECTION_MAX_TOKENS,
            cancel_event=cancel_event,
        )
        sections.append(first_section)
        self.logger.info("Section 1 generated (%d chars)", len(first_section))

        while len(sections) < MAX_SECTIONS:
            section_number = len(sections) + 1
            next_section = self.gateway.complete(
                build_continuation_prompt(
                    outline,
                    SECTION_SEPARATOR.join(sections),
                    prompt_text,
                    section_number,
                ),
                SECTION_MAX_TOKENS,
                cancel_event=cancel_event,
            )
            sections.append(next_section)
            self.logger.info("Section %d generated (%d chars)", section_number, len(next_section))

            if is_story_finished(next_section):
                self.logger.info("Section %d reads as the ending; stopping.", section_number)
                break
        else:
            self.logger.info("Reached the %d section limit.", MAX_SECTIONS)

        return sections

    def _enter(self, stage: GenerationStage) -> None:
        self.logger.debug("Story generation stage: %s", stage.value)
        if self.on_stage_change is None:
            return
        try:
            self.on_stage_change(stage)
        except Exception:
            # Observers never change the outcome of a run.
            self.logger.exception("Stage observer failed on '%s'", stage.value)


__all__ = [
    "END_OF_STORY_MARKERS",
    "GenerationStage",
    "MAX_SECTIONS",
    "StoryGenerationError",
    "StoryGenerationService",
    "is_story_finished",
]
