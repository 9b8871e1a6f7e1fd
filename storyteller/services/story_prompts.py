"""Prompt builders for the outline and section requests of a story run."""

from __future__ import annotations

from system_prompts import (
    NARRATIVE_ONLY_RULES,
    OUTLINE_MARKUP_SCHEMA,
    get_prompt_max_new_tokens,
    get_prompt_template,
)

from ..models import Outline

OUTLINE_PROMPT_KEY = "story_outline"
FIRST_SECTION_PROMPT_KEY = "story_first_section"
NEXT_SECTION_PROMPT_KEY = "story_next_section"

OUTLINE_MAX_TOKENS = get_prompt_max_new_tokens(OUTLINE_PROMPT_KEY, 1024)
FIRST_SECTION_MAX_TOKENS = get_prompt_max_new_tokens(FIRST_SECTION_PROMPT_KEY, 2048)
SECTION_MAX_TOKENS = get_prompt_max_new_tokens(NEXT_SECTION_PROMPT_KEY, 2048)

PROBLEM_PLACEHOLDER = "an adventure"


def build_outline_prompt(user_prompt: str) -> str:
    """Ask for an outline of ``user_prompt`` in the story markup schema.

    The user prompt is embedded as-is; markup characters are not escaped.
    """

    return get_prompt_template(OUTLINE_PROMPT_KEY).format(
        user_prompt=user_prompt,
        schema=OUTLINE_MARKUP_SCHEMA,
    )


def build_first_section_prompt(outline: Outline, user_prompt: str) -> str:
    characters = ", ".join(f"{character.name} ({character.role})" for character in outline.characters)
    settings = ", ".join(setting.name for setting in outline.settings)
    problem = outline.plot.problem if outline.plot is not None else PROBLEM_PLACEHOLDER

    return get_prompt_template(FIRST_SECTION_PROMPT_KEY).format(
        user_prompt=user_prompt,
        characters=characters,
        settings=settings,
        problem=problem,
        rules=NARRATIVE_ONLY_RULES,
    )


def build_continuation_prompt(
    outline: Outline,
    accumulated_text: str,
    user_prompt: str,
    section_number: int,
) -> str:
    """Ask for section ``section_number`` given everything written so far."""

    return get_prompt_template(NEXT_SECTION_PROMPT_KEY).format(
        user_prompt=user_prompt,
        conclusion=outline.conclusion,
        previous_sections=accumulated_text,
        section_number=section_number,
        rules=NARRATIVE_ONLY_RULES,
    )


__all__ = [
    "FIRST_SECTION_MAX_TOKENS",
    "OUTLINE_MAX_TOKENS",
    "PROBLEM_PLACEHOLDER",
    "SECTION_MAX_TOKENS",
    "build_continuation_prompt",
    "build_first_section_prompt",
    "build_outline_prompt",
]
