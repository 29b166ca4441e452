"""
Template model — an immutable text blob and the placeholders it uses.
"""

from __future__ import annotations

import re

from pydantic import BaseModel, ConfigDict

# {NAME} tokens; anything else in braces (nginx blocks, $host) is plain text.
PLACEHOLDER_PATTERN = re.compile(r"\{([A-Z][A-Z0-9_]*)\}")


class Template(BaseModel):
    """A loaded configuration template.

    Attributes:
        text:         Raw template text.
        placeholders: Placeholder names in order of first appearance.
        source:       Where the text came from (file path or label).
    """

    model_config = ConfigDict(frozen=True)

    text: str
    placeholders: tuple[str, ...] = ()
    source: str = ""

    @classmethod
    def from_text(cls, text: str, source: str = "") -> Template:
        seen: dict[str, None] = {}
        for match in PLACEHOLDER_PATTERN.finditer(text):
            seen.setdefault(match.group(1), None)
        return cls(text=text, placeholders=tuple(seen), source=source)
