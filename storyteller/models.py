"""Story data structures shared by the generation pipeline and the web host."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional, Tuple, Union


@dataclass(frozen=True)
class Character:
    name: str = ""
    role: str = ""
    traits: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Setting:
    id: str = ""
    name: str = ""
    time: str = ""
    mood: str = ""


@dataclass(frozen=True)
class Twist:
    # ``setting`` holds a setting id; it is not checked against the outline.
    setting: str = ""
    description: str = ""


@dataclass(frozen=True)
class Plot:
    problem: str = ""
    twists: Tuple[Twist, ...] = ()


@dataclass(frozen=True)
class Outline:
    """Pre-narrative structure extracted from the model's outline response."""

    characters: Tuple[Character, ...] = ()
    settings: Tuple[Setting, ...] = ()
    plot: Optional[Plot] = None
    conclusion: str = ""

    def is_empty(self) -> bool:
        return not (self.characters or self.settings or self.plot or self.conclusion)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Story:
    outline: Outline = field(default_factory=Outline)
    sections: Tuple[str, ...] = ()
    full_text: str = ""

    @classmethod
    def from_sections(cls, outline: Outline, sections: Tuple[str, ...]) -> "Story":
        return cls(outline=outline, sections=tuple(sections), full_text="\n\n".join(sections))

    @property
    def word_count(self) -> int:
        return len(self.full_text.split())

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["word_count"] = self.word_count
        return payload


@dataclass(frozen=True)
class GenerationSuccess:
    story: Story
    used_fallback: bool = False


@dataclass(frozen=True)
class GenerationError:
    message: str


GenerationResult = Union[GenerationSuccess, GenerationError]


__all__ = [
    "Character",
    "GenerationError",
    "GenerationResult",
    "GenerationSuccess",
    "Outline",
    "Plot",
    "Setting",
    "Story",
    "Twist",
]
