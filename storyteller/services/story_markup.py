"""Tolerant reader for the outline markup returned by the text generator.

The outline request asks the model for a small XML document (see
``system_prompts.OUTLINE_MARKUP_SCHEMA``).  Models frequently wander off that
contract, so :func:`parse_outline` is best-effort:

* Markdown code fences are dropped, bare ampersands are escaped and, when a
  ``<story>`` block is present, any chatter around it is ignored.
* The document is walked once as a pull-style event stream.  Only the tags
  the pipeline understands are read; anything else is skipped.
* A document that is not well formed yields an empty :class:`Outline`
  instead of an exception.  A malformed outline must never end a story run.
"""

from __future__ import annotations

import logging
import re
from typing import Iterable, Iterator, List, Optional, Tuple, Union
from xml.dom import pulldom
from xml.dom.minidom import Element
from xml.sax import SAXException

from ..models import Character, Outline, Plot, Setting, Twist

LOGGER = logging.getLogger(__name__)

_FENCE_PATTERN = re.compile(r"```[A-Za-z]*")
_STORY_BLOCK_PATTERN = re.compile(r"<story\b(?:(?!<story\b).)*?</story\s*>", re.DOTALL)
_BARE_AMPERSAND_PATTERN = re.compile(r"&(?!(?:amp|lt|gt|quot|apos|#[0-9]+|#x[0-9A-Fa-f]+);)")

_SKIPPED_EVENTS = {pulldom.COMMENT, pulldom.PROCESSING_INSTRUCTION}

Token = Tuple[str, Union[Element, str, None]]


def parse_outline(markup_text: Optional[str]) -> Outline:
    """Return the outline described by ``markup_text``.

    Never raises: unreadable markup is logged and produces ``Outline()``.
    """

    document = _isolate_story_markup(markup_text or "")
    try:
        outline = _OutlineReader(pulldom.parseString(document)).read()
    except (SAXException, ValueError) as exc:
        LOGGER.warning("Outline markup could not be parsed; continuing with an empty outline. Error: %s", exc)
        return Outline()

    LOGGER.debug(
        "Parsed outline markup: %d characters, %d settings, plot=%s",
        len(outline.characters),
        len(outline.settings),
        outline.plot is not None,
    )
    return outline


def _isolate_story_markup(text: str) -> str:
    cleaned = _FENCE_PATTERN.sub("", text)
    # Unescaped "&" in names and descriptions.
    cleaned = _BARE_AMPERSAND_PATTERN.sub("&amp;", cleaned)
    match = _STORY_BLOCK_PATTERN.search(cleaned)
    if match:
        return match.group(0)
    return cleaned.strip()


def _coalesce_text(events: Iterable[Tuple[str, object]]) -> Iterator[Token]:
    """Merge adjacent character data into a single text token.

    SAX may split one run of text into several events (around entity
    references, or at buffer boundaries).  Comments and processing
    instructions are not tokens.
    """

    pending: List[str] = []
    for event, node in events:
        if event == pulldom.CHARACTERS:
            pending.append(node.data)
            continue
        if event in _SKIPPED_EVENTS:
            continue
        if pending:
            yield pulldom.CHARACTERS, "".join(pending)
            pending = []
        yield event, node
    if pending:
        yield pulldom.CHARACTERS, "".join(pending)


class _OutlineReader:
    def __init__(self, events: Iterable[Tuple[str, object]]):
        self._tokens = _coalesce_text(events)

    def read(self) -> Outline:
        characters: List[Character] = []
        settings: List[Setting] = []
        plot: Optional[Plot] = None
        conclusion = ""

        for event, node in self._tokens:
            if event != pulldom.START_ELEMENT:
                continue
            tag = node.tagName
            if tag == "character":
                characters.append(_read_character(node))
            elif tag == "setting":
                settings.append(_read_setting(node))
            elif tag == "plot":
                plot = self._read_plot()
            elif tag == "conclusion":
                conclusion = self._read_text()

        return Outline(
            characters=tuple(characters),
            settings=tuple(settings),
            plot=plot,
            conclusion=conclusion,
        )

    def _read_plot(self) -> Plot:
        problem = ""
        twists: List[Twist] = []

        for event, node in self._tokens:
            if event == pulldom.END_ELEMENT and node.tagName == "plot":
                break
            if event != pulldom.START_ELEMENT:
                continue
            if node.tagName == "problem":
                problem = self._read_text()
            elif node.tagName == "twist":
                setting = node.getAttribute("setting")
                twists.append(Twist(setting=setting, description=self._read_text()))

        return Plot(problem=problem, twists=tuple(twists))

    def _read_text(self) -> str:
        # Only the token right after the start tag counts; nested markup is not followed.
        event, value = next(self._tokens, (pulldom.END_DOCUMENT, None))
        if event == pulldom.CHARACTERS:
            return value.strip()
        return ""


def _read_character(node: Element) -> Character:
    traits: Tuple[str, ...] = ()
    if node.hasAttribute("traits"):
        traits = tuple(piece.strip() for piece in node.getAttribute("traits").split(","))
    return Character(
        name=node.getAttribute("name"),
        role=node.getAttribute("role"),
        traits=traits,
    )


def _read_setting(node: Element) -> Setting:
    return Setting(
        id=node.getAttribute("id"),
        name=node.getAttribute("name"),
        time=node.getAttribute("time"),
        mood=node.getAttribute("mood"),
    )


__all__ = ["parse_outline"]
