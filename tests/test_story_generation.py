import sys
import threading
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from storyteller.models import GenerationError, GenerationSuccess
from storyteller.services.completion import (
    MOCK_SECTION_RESPONSE,
    CompletionError,
    LiveCompletionGateway,
    MockCompletionGateway,
)
from storyteller.services.story_generation import (
    MAX_SECTIONS,
    GenerationStage,
    StoryGenerationError,
    StoryGenerationService,
    is_story_finished,
)


OUTLINE_MARKUP = """<story>
    <characters><character name="Mila" role="protagonist" traits="brave"/></characters>
    <settings><setting id="1" name="Lighthouse" time="dusk" mood="tense"/></settings>
    <plot><problem>The lamp has gone dark</problem></plot>
    <conclusion>The ships find their way home</conclusion>
</story>"""


class ScriptedGateway:
    """Returns queued replies and records every request."""

    backend_name = "scripted"

    def __init__(self, *replies, mock=False):
        self.replies = list(replies)
        self.calls = []
        self.mock = mock

    def is_mock_mode(self):
        return self.mock

    def complete(self, prompt, max_tokens, *, expect_markup=False, cancel_event=None):
        self.calls.append({"prompt": prompt, "max_tokens": max_tokens, "expect_markup": expect_markup})
        reply = self.replies.pop(0) if self.replies else "More happened."
        if isinstance(reply, Exception):
            raise reply
        return reply


def test_story_stops_after_section_limit_when_no_ending_appears():
    gateway = ScriptedGateway(OUTLINE_MARKUP, "One.", "Two.", "Three.", "Four.", "Five.", "Six.")
    service = StoryGenerationService(gateway)

    result = service.generate_story("A lighthouse keeper's daughter")

    assert isinstance(result, GenerationSuccess)
    assert result.story.sections == ("One.", "Two.", "Three.", "Four.", "Five.")
    assert len(gateway.calls) == 1 + MAX_SECTIONS
    assert result.story.full_text == "One.\n\nTwo.\n\nThree.\n\nFour.\n\nFive."
    assert result.story.outline.characters[0].name == "Mila"
    assert result.used_fallback is False


def test_story_stops_once_a_section_reads_as_the_ending():
    gateway = ScriptedGateway(OUTLINE_MARKUP, "It began.", "And they lived happily. The End.", "unused")
    service = StoryGenerationService(gateway)

    result = service.generate_story("prompt")

    assert isinstance(result, GenerationSuccess)
    assert result.story.full_text == "It began.\n\nAnd they lived happily. The End."
    assert len(gateway.calls) == 3


def test_first_section_is_never_checked_for_an_ending():
    gateway = ScriptedGateway(OUTLINE_MARKUP, "The end of summer came.", "Finally, the lamp shone.")

    result = StoryGenerationService(gateway).generate_story("prompt")

    assert result.story.sections == ("The end of summer came.", "Finally, the lamp shone.")


def test_requests_use_the_expected_budgets_and_markup_flags():
    gateway = ScriptedGateway(OUTLINE_MARKUP, "One.", "Two. Finally over.")

    StoryGenerationService(gateway).generate_story("prompt")

    assert [call["max_tokens"] for call in gateway.calls] == [1024, 2048, 2048]
    assert [call["expect_markup"] for call in gateway.calls] == [True, False, False]


def test_continuation_prompts_carry_previous_sections_and_numbering():
    gateway = ScriptedGateway(OUTLINE_MARKUP, "Alpha.", "Beta.", "Gamma, the end.")

    StoryGenerationService(gateway).generate_story("A lighthouse")

    outline_prompt, first_prompt, second_prompt, third_prompt = (call["prompt"] for call in gateway.calls)
    assert '"A lighthouse"' in outline_prompt
    assert "Mila (protagonist)" in first_prompt
    assert "Previous sections:\nAlpha." in second_prompt
    assert "Write section 2 of the story." in second_prompt
    assert "Previous sections:\nAlpha.\n\nBeta." in third_prompt
    assert "Write section 3 of the story." in third_prompt
    assert "The ships find their way home" in third_prompt


def test_unparseable_outline_still_produces_a_story():
    gateway = ScriptedGateway("I'd rather just tell you the story.", "One.", "Two, the end.")

    result = StoryGenerationService(gateway).generate_story("prompt")

    assert isinstance(result, GenerationSuccess)
    assert result.story.outline.is_empty()
    assert "Main problem/conflict: an adventure" in gateway.calls[1]["prompt"]


@pytest.mark.parametrize("prompt", ["", "   ", None])
def test_blank_prompt_is_rejected_without_calling_the_gateway(prompt):
    gateway = ScriptedGateway()
    stages = []

    result = StoryGenerationService(gateway, on_stage_change=stages.append).generate_story(prompt)

    assert result == GenerationError("A story prompt is required.")
    assert gateway.calls == []
    assert stages == []


def test_backend_failure_fails_the_whole_run():
    gateway = ScriptedGateway(OUTLINE_MARKUP, "One.", CompletionError("connection reset"))
    stages = []

    result = StoryGenerationService(gateway, on_stage_change=stages.append).generate_story("prompt")

    assert isinstance(result, GenerationError)
    assert result.message == "Failed to generate story: connection reset"
    assert stages[-1] is GenerationStage.FAILED


def test_unexpected_exception_without_message_is_reported():
    gateway = ScriptedGateway(KeyError())

    result = StoryGenerationService(gateway).generate_story("prompt")

    assert isinstance(result, GenerationError)
    assert result.message.startswith("Failed to generate story: ")


def test_degraded_backend_errors_become_section_text():
    class BrokenGenerator:
        def stream_response(self, prompt, *, max_new_tokens=None, cancel_event=None):
            raise RuntimeError("model offline")
            yield  # pragma: no cover

    gateway = LiveCompletionGateway(BrokenGenerator(), degrade_errors=True)

    result = StoryGenerationService(gateway).generate_story("prompt")

    assert isinstance(result, GenerationSuccess)
    assert result.story.outline.is_empty()
    assert len(result.story.sections) == MAX_SECTIONS
    assert result.story.sections[0].startswith("Error: model offline.")


def test_stage_sequence_for_a_successful_run():
    stages = []
    gateway = ScriptedGateway(OUTLINE_MARKUP, "One.", "Two, the end.")

    StoryGenerationService(gateway, on_stage_change=stages.append).generate_story("prompt")

    assert stages == [
        GenerationStage.IDLE,
        GenerationStage.GENERATING_OUTLINE,
        GenerationStage.GENERATING_SECTIONS,
        GenerationStage.DONE,
    ]


def test_cancelled_run_reports_an_error():
    cancel_event = threading.Event()
    stages = []

    class CancellingGenerator:
        def __init__(self):
            self.calls = 0

        def stream_response(self, prompt, *, max_new_tokens=None, cancel_event=None):
            self.calls += 1
            yield OUTLINE_MARKUP
            # The user gives up while the outline is still streaming.
            cancel_event.set()

    generator = CancellingGenerator()
    service = StoryGenerationService(LiveCompletionGateway(generator), on_stage_change=stages.append)

    result = service.generate_story("prompt", cancel_event=cancel_event)

    assert isinstance(result, GenerationError)
    assert result.message == "Story generation was cancelled."
    assert generator.calls == 1
    assert stages[-1] is GenerationStage.FAILED


def test_mock_gateway_produces_a_full_length_fallback_story():
    result = StoryGenerationService(MockCompletionGateway()).generate_story("A cat in a hat")

    assert isinstance(result, GenerationSuccess)
    assert result.used_fallback is True
    assert result.story.sections == (MOCK_SECTION_RESPONSE,) * MAX_SECTIONS
    assert [character.name for character in result.story.outline.characters] == ["Cat in Hat", "White Rabbit"]
    assert result.story.word_count == len(result.story.full_text.split())


def test_service_requires_a_gateway():
    with pytest.raises(StoryGenerationError):
        StoryGenerationService(None)


@pytest.mark.parametrize(
    "text, finished",
    [
        ("And that was THE END.", True),
        ("In conclusion, the cat went home.", True),
        ("Finally they slept.", True),
        ("The story continues tomorrow.", False),
        ("", False),
    ],
)
def test_is_story_finished(text, finished):
    assert is_story_finished(text) is finished


@pytest.mark.parametrize("failing_stage", list(GenerationStage))
def test_broken_stage_observer_never_changes_the_result(failing_stage):
    seen = []

    def observer(stage):
        seen.append(stage)
        if stage is failing_stage:
            raise RuntimeError("observer broke")

    result = StoryGenerationService(MockCompletionGateway(), on_stage_change=observer).generate_story("A cat in a hat")

    assert isinstance(result, GenerationSuccess)
    assert len(result.story.sections) == MAX_SECTIONS
    assert seen[-1] is GenerationStage.DONE


def test_broken_observer_on_failure_still_returns_an_error():
    def observer(stage):
        if stage is GenerationStage.FAILED:
            raise RuntimeError("observer broke")

    gateway = ScriptedGateway(CompletionError("connection reset"))

    result = StoryGenerationService(gateway, on_stage_change=observer).generate_story("prompt")

    assert result == GenerationError("Failed to generate story: connection reset")
