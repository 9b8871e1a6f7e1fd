"""Central configuration for the prompts sent to the story text generator."""

from __future__ import annotations

# The markup schema below is the wire contract with the model: the outline
# parser reads exactly these tag and attribute names.
OUTLINE_MARKUP_SCHEMA = (
    "<story>\n"
    "    <characters>\n"
    '        <character name="Character Name" role="protagonist/antagonist" traits="trait1,trait2,trait3"/>\n'
    "    </characters>\n"
    "    <settings>\n"
    '        <setting id="1" name="Setting Name" time="time of day" mood="atmosphere"/>\n'
    "    </settings>\n"
    "    <plot>\n"
    "        <problem>Main conflict or problem</problem>\n"
    "        <twists>\n"
    '            <twist setting="setting_id">Plot twist description</twist>\n'
    "        </twists>\n"
    "    </plot>\n"
    "    <conclusion>How the story ends</conclusion>\n"
    "</story>"
)

NARRATIVE_ONLY_RULES = (
    "IMPORTANT: Respond with narrative text only. Do not include any XML tags or formatting.\n"
    "Just write the story content directly."
)

STORY_PROMPTS = {
    "story_outline": {
        "max_new_tokens": 1024,
        "template": (
            'You are a creative storyteller. Generate a story outline based on this prompt: "{user_prompt}"\n'
            "\n"
            "Please respond with an XML structure containing:\n"
            "- Characters with names, roles, and traits\n"
            "- Settings with IDs, names, times, and moods\n"
            "- Plot with problem and twists\n"
            "- Conclusion summary\n"
            "\n"
            "Format your response as:\n"
            "{schema}"
        ),
    },
    "story_first_section": {
        "max_new_tokens": 2048,
        "template": (
            "Write the first section of a story based on this outline:\n"
            "\n"
            'Original prompt: "{user_prompt}"\n'
            "Main characters: {characters}\n"
            "Settings: {settings}\n"
            "Main problem/conflict: {problem}\n"
            "\n"
            "Write an engaging opening section that introduces the characters, setting, and sets up the main conflict.\n"
            "Make it vivid and captivating. Aim for 200-400 words.\n"
            "\n"
            "{rules}"
        ),
    },
    "story_next_section": {
        "max_new_tokens": 2048,
        "template": (
            "Continue the story based on the outline and previous sections.\n"
            "\n"
            'Original prompt: "{user_prompt}"\n'
            'Story conclusion should lead to: "{conclusion}"\n'
            "\n"
            "Previous sections:\n"
            "{previous_sections}\n"
            "\n"
            "Write section {section_number} of the story. Continue developing the plot, characters, and conflicts.\n"
            'If this should be the final section, include "The End" and wrap up the story by resolving the plot.\n'
            "Aim for 200-400 words.\n"
            "\n"
            "{rules}"
        ),
    },
}


def get_prompt_template(name: str) -> str:
    """Return the template text registered under ``name``."""

    entry = STORY_PROMPTS.get(name)
    if not isinstance(entry, dict) or not entry.get("template"):
        raise KeyError(f"No story prompt template is registered as '{name}'.")
    return entry["template"]


def get_prompt_max_new_tokens(name: str, fallback: int | None = None) -> int | None:
    """Return the configured ``max_new_tokens`` for ``name`` if available."""

    entry = STORY_PROMPTS.get(name)
    if not isinstance(entry, dict):
        return fallback

    raw_value = entry.get("max_new_tokens")
    if raw_value is None:
        return fallback

    try:
        tokens = int(raw_value)
    except (TypeError, ValueError):
        return fallback

    if tokens <= 0:
        return fallback

    return tokens
