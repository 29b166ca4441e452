"""
Placeholder rendering — ``{NAME}`` substitution for config templates.

Rendering is a pure function: it either returns the complete text or
raises ``MissingPlaceholder`` for the first unresolved token, never a
partial result. Each token is replaced literally and in one pass, so a
substituted value that happens to contain ``{OTHER}`` is left as-is.

Template lookup checks the configured template directories first and
falls back to the templates bundled in ``src/core/data/templates``.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from pathlib import Path

from src.core.data import TEMPLATES_DIR
from src.core.errors import MissingPlaceholder, PreconditionFailed
from src.core.models.template import PLACEHOLDER_PATTERN, Template

logger = logging.getLogger(__name__)


def render(template: Template, substitutions: Mapping[str, str]) -> str:
    """Render a template against a substitution map.

    Args:
        template: The loaded template.
        substitutions: Placeholder name → replacement value.

    Returns:
        The rendered text with every ``{NAME}`` token replaced.

    Raises:
        MissingPlaceholder: For the first placeholder (in order of
            appearance) that has no entry in ``substitutions``.
    """
    for name in template.placeholders:
        if name not in substitutions:
            raise MissingPlaceholder(name, template.source)

    parts: list[str] = []
    cursor = 0
    for match in PLACEHOLDER_PATTERN.finditer(template.text):
        parts.append(template.text[cursor:match.start()])
        parts.append(str(substitutions[match.group(1)]))
        cursor = match.end()
    parts.append(template.text[cursor:])
    return "".join(parts)


def render_text(text: str, substitutions: Mapping[str, str]) -> str:
    """Shortcut for rendering an inline template string."""
    return render(Template.from_text(text), substitutions)


def find_template(name: str, search_dirs: Sequence[str | Path] = ()) -> Path:
    """Locate a template file by name.

    Args:
        name: File name (e.g. ``"next.conf"``) or an explicit path.
        search_dirs: Directories tried before the bundled templates.

    Raises:
        PreconditionFailed: If no directory holds the template.
    """
    explicit = Path(name)
    if explicit.is_absolute() or explicit.parent != Path("."):
        if explicit.is_file():
            return explicit
        raise PreconditionFailed(f"Template not found: {explicit}")

    for directory in [*search_dirs, TEMPLATES_DIR]:
        candidate = Path(directory) / name
        if candidate.is_file():
            return candidate

    raise PreconditionFailed(
        f"Template '{name}' not found in: "
        + ", ".join(str(d) for d in [*search_dirs, TEMPLATES_DIR])
    )


def load_template(name: str | Path, search_dirs: Sequence[str | Path] = ()) -> Template:
    """Load a template by name or path."""
    path = find_template(str(name), search_dirs)
    logger.debug("Loading template %s", path)
    return Template.from_text(path.read_text(encoding="utf-8"), source=str(path))
