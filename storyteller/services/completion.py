"""Completion gateway between the story pipeline and the text generator.

The pipeline only ever asks one question: "complete this prompt within this
token budget".  :class:`LiveCompletionGateway` answers it with a configured
backend (local Transformers model or an OpenAI-compatible API), accumulating
the streamed reply.  :class:`MockCompletionGateway` answers it with fixed
text so the application stays usable without a model.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Mapping, Optional

LOGGER = logging.getLogger(__name__)

DEGRADED_ERROR_NOTE = "The text generation backend could not complete the request."

MOCK_OUTLINE_RESPONSE = """<story>
    <characters>
        <character name="Cat in Hat" role="protagonist" traits="playful,adventurous,curious"/>
        <character name="White Rabbit" role="guide" traits="timely,worried,nervous"/>
    </characters>
    <settings>
        <setting id="1" name="Cozy Bedroom" time="night" mood="peaceful"/>
        <setting id="2" name="Wonderland" time="twilight" mood="mysterious"/>
    </settings>
    <plot>
        <problem>Getting lost on the way to Neverland</problem>
        <twists>
            <twist setting="2">Meeting the Cheshire Cat who offers cryptic advice</twist>
        </twists>
    </plot>
    <conclusion>Returning home with magical memories and new friends</conclusion>
</story>"""

MOCK_SECTION_RESPONSE = """In a cozy bedroom on a quiet night, a mischievous Cat in Hat sat perched on the edge of a bed. The room was filled with the soft glow of a nightlight, casting playful shadows on the walls. The Cat's eyes sparkled with adventure as he looked at his sleeping young friend.

"Oh, what fun we could have!" the Cat whispered, his hat tilted at a jaunty angle. "But first, we need to find our way to Neverland!"

Suddenly, a nervous White Rabbit burst through an imaginary door, checking his pocket watch frantically. "We're late! We're terribly late!" he exclaimed, twitching with worry. The Cat grinned and extended a paw. "Perfect! A guide who knows the way. Let's go on an adventure!"

Together, they tumbled into a swirling portal, leaving the safety of the bedroom behind. The world around them transformed into the mysterious realm of Wonderland, where anything was possible and adventure awaited at every turn."""


class CompletionError(RuntimeError):
    """Raised when the text generation backend fails to complete a prompt."""


class GenerationCancelled(RuntimeError):
    """Raised when the caller cancels a completion that is still running."""


def _raise_if_cancelled(cancel_event: Optional[threading.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise GenerationCancelled("Story generation was cancelled.")


class MockCompletionGateway:
    """Deterministic stand-in used when no text generator is configured."""

    backend_name = "mock"

    def is_mock_mode(self) -> bool:
        return True

    def compute_device(self) -> str:
        return "none"

    def complete(
        self,
        prompt: str,
        max_tokens: int,
        *,
        expect_markup: bool = False,
        cancel_event: Optional[threading.Event] = None,
    ) -> str:
        _raise_if_cancelled(cancel_event)
        LOGGER.warning("No text generator configured; returning the built-in %s response.",
                       "outline" if expect_markup else "section")
        return MOCK_OUTLINE_RESPONSE if expect_markup else MOCK_SECTION_RESPONSE


class LiveCompletionGateway:
    """Accumulate the reply of a real text generator.

    ``generator`` needs a ``stream_response(prompt, *, max_new_tokens,
    cancel_event)`` method yielding text fragments, or failing that a plain
    ``generate_response(prompt, *, max_new_tokens)``.  Fragments are joined in
    the order they arrive.

    Backend failures raise :class:`CompletionError`.  With
    ``degrade_errors=True`` the failure is instead returned as the completion
    text (``"Error: <message>. <note>"``) so a run keeps going.
    """

    def __init__(self, generator: Any, *, degrade_errors: bool = False):
        if generator is None:
            raise ValueError("LiveCompletionGateway requires a text generator.")
        self.generator = generator
        self.degrade_errors = degrade_errors
        self.backend_name = type(generator).__name__

    def is_mock_mode(self) -> bool:
        return False

    def compute_device(self) -> str:
        """Label of the device or endpoint the generator runs on."""

        get_device = getattr(self.generator, "get_compute_device", None)
        return get_device() if callable(get_device) else "unknown"

    def complete(
        self,
        prompt: str,
        max_tokens: int,
        *,
        expect_markup: bool = False,
        cancel_event: Optional[threading.Event] = None,
    ) -> str:
        _raise_if_cancelled(cancel_event)
        LOGGER.debug("Requesting completion (max_tokens=%d, expect_markup=%s)", max_tokens, expect_markup)
        try:
            text = self._collect(prompt, max_tokens, cancel_event)
        except GenerationCancelled:
            raise
        except Exception as exc:
            if not self.degrade_errors:
                raise CompletionError(str(exc) or type(exc).__name__) from exc
            LOGGER.error("Text generation failed; continuing with the error text: %s", exc)
            return f"Error: {exc}. {DEGRADED_ERROR_NOTE}"

        _raise_if_cancelled(cancel_event)
        LOGGER.debug("Completion finished, response length: %d", len(text))
        return text

    def _collect(self, prompt: str, max_tokens: int, cancel_event: Optional[threading.Event]) -> str:
        stream = getattr(self.generator, "stream_response", None)
        if stream is None:
            return self.generator.generate_response(prompt, max_new_tokens=max_tokens) or ""

        fragments = []
        for fragment in stream(prompt, max_new_tokens=max_tokens, cancel_event=cancel_event):
            if not isinstance(fragment, str):
                # Non-text stream items carry nothing for the story.
                continue
            fragments.append(fragment)
            _raise_if_cancelled(cancel_event)
        return "".join(fragments)


def build_completion_gateway(settings: Mapping[str, Any]):
    """Create the gateway described by a Flask-style config mapping.

    ``STORY_BACKEND="openai"`` selects the OpenAI-compatible API backend;
    otherwise ``TEXT_GENERATOR_MODEL_PATH`` selects a local Transformers
    model.  Without either, or when the backend cannot be initialised, the
    gateway runs in mock mode.
    """

    backend = (settings.get("STORY_BACKEND") or "local").strip().lower()
    degrade_errors = bool(settings.get("STORY_DEGRADE_BACKEND_ERRORS"))
    generator = None

    if backend == "openai":
        generator = _build_openai_generator(settings)
    elif backend == "local":
        generator = _build_local_generator(settings)
    else:
        LOGGER.warning("Unknown STORY_BACKEND '%s'; using mock story responses.", backend)

    if generator is None:
        return MockCompletionGateway()
    return LiveCompletionGateway(generator, degrade_errors=degrade_errors)


def _build_local_generator(settings: Mapping[str, Any]) -> Optional[Any]:  # pragma: no cover - integration point
    model_path = settings.get("TEXT_GENERATOR_MODEL_PATH")
    if not model_path:
        LOGGER.info("TEXT_GENERATOR_MODEL_PATH not configured; using mock story responses.")
        return None

    try:
        from text_generator import TextGenerator

        sampling = {
            "temperature": settings.get("TEXT_GENERATOR_TEMPERATURE"),
            "top_p": settings.get("TEXT_GENERATOR_TOP_P"),
        }
        LOGGER.info("Initialising text generator with model path: %s", model_path)
        return TextGenerator(
            model_path=model_path,
            **{key: value for key, value in sampling.items() if value is not None},
        )
    except Exception as exc:
        LOGGER.warning("Failed to initialise text generator at '%s': %s", model_path, exc)
        return None


def _build_openai_generator(settings: Mapping[str, Any]) -> Optional[Any]:
    model_name = settings.get("OPENAI_MODEL")
    api_key = settings.get("OPENAI_API_KEY")
    base_url = settings.get("OPENAI_BASE_URL")
    if not model_name or not (api_key or base_url):
        LOGGER.info("OpenAI backend selected without OPENAI_MODEL and credentials; using mock story responses.")
        return None

    try:
        from api_handler import OpenAIChatGenerator

        LOGGER.info("Initialising OpenAI chat backend for model: %s", model_name)
        return OpenAIChatGenerator(
            model_name=model_name,
            api_key=api_key or "",
            base_url=base_url,
            temperature=settings.get("TEXT_GENERATOR_TEMPERATURE"),
            top_p=settings.get("TEXT_GENERATOR_TOP_P"),
        )
    except Exception as exc:
        LOGGER.warning("Failed to initialise the OpenAI backend for '%s': %s", model_name, exc)
        return None


__all__ = [
    "CompletionError",
    "DEGRADED_ERROR_NOTE",
    "GenerationCancelled",
    "LiveCompletionGateway",
    "MOCK_OUTLINE_RESPONSE",
    "MOCK_SECTION_RESPONSE",
    "MockCompletionGateway",
    "build_completion_gateway",
]
