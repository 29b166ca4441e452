"""
Render use case — preview a template with substitutions.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

from src.core.config.loader import load_config
from src.core.engine.template import load_template, render
from src.core.errors import ConfigError, MissingPlaceholder, PreconditionFailed
from src.core.models.outcome import ExitCode


@dataclass
class RenderResult:
    """Rendered text, or why rendering failed."""

    template: str = ""
    placeholders: list[str] = field(default_factory=list)
    text: str | None = None
    error: str | None = None

    @property
    def exit_code(self) -> ExitCode:
        return ExitCode.PRECONDITION_FAILED if self.error else ExitCode.OK

    def to_dict(self) -> dict:
        result: dict = {"template": self.template, "placeholders": self.placeholders}
        if self.error:
            result["error"] = self.error
        else:
            result["text"] = self.text
        return result


def parse_assignments(pairs: Iterable[str]) -> dict[str, str]:
    """Turn ``KEY=VALUE`` strings into a substitution map.

    Raises:
        PreconditionFailed: A pair has no ``=`` or an empty key.
    """
    values: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise PreconditionFailed(f"Expected KEY=VALUE, got '{pair}'")
        values[key.strip()] = value
    return values


def render_template(
    name: str,
    assignments: Iterable[str] = (),
    config_path: Path | None = None,
) -> RenderResult:
    """Render a bundled, configured or explicit template file."""
    result = RenderResult(template=name)
    try:
        config = load_config(config_path)
        template = load_template(name, config.template_dirs)
        result.template = template.source or name
        result.placeholders = list(template.placeholders)
        result.text = render(template, parse_assignments(assignments))
    except (ConfigError, MissingPlaceholder, PreconditionFailed) as e:
        result.error = str(e)
    return result
