"""
Error taxonomy — every failure the engine knows how to name.

Rendering and checks fail locally (the caller fixes input and retries).
Inside a transaction, the engine converts these into group outcomes;
only ``AlreadyRunning`` and ``ConfigError`` escape to the CLI as
exceptions.
"""

from __future__ import annotations


class DeployError(Exception):
    """Base class for all vpsdeploy errors."""


class ConfigError(DeployError):
    """Raised when vpsdeploy.yml is invalid or unreadable."""


class MissingPlaceholder(DeployError):
    """A template references a placeholder with no substitution value."""

    def __init__(self, name: str, template: str = ""):
        self.name = name
        self.template = template
        where = f" in {template}" if template else ""
        super().__init__(f"Missing value for placeholder {{{name}}}{where}")


class ActionError(DeployError):
    """An action's underlying command or mutation failed."""

    def __init__(self, action_name: str, message: str):
        self.action_name = action_name
        self.message = message
        super().__init__(f"{action_name}: {message}")


class ValidationFailed(DeployError):
    """The validation hook of an atomic group rejected the staged files."""

    def __init__(self, group: str, reason: str):
        self.group = group
        self.reason = reason
        super().__init__(f"Validation failed for '{group}': {reason}")


class Uncommittable(DeployError):
    """A post-commit step failed and the group has no rollback path."""

    def __init__(self, group: str, reason: str):
        self.group = group
        self.reason = reason
        super().__init__(
            f"'{group}' failed after commit and cannot be rolled back: {reason}"
        )


class AlreadyRunning(DeployError):
    """Another provisioning run holds the advisory lock."""

    def __init__(self, lock_path: str, holder: str = ""):
        self.lock_path = lock_path
        self.holder = holder
        detail = f" (held by {holder})" if holder else ""
        super().__init__(f"Another run is in progress: {lock_path}{detail}")


class PreconditionFailed(DeployError):
    """User-supplied input or host state makes an operation invalid."""


class PrerequisiteMissing(PreconditionFailed):
    """A required tool is absent and was not (or could not be) installed."""
