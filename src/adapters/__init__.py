"""Adapters — bindings to the host (commands, packages, services, git, input).

Public re-exports for convenient access.
"""

from src.adapters.base import CommandRunner, PackageManager, ServiceManager, SourceControl
from src.adapters.mock import MockPackageManager, MockRunner, MockSourceControl
from src.adapters.prompt import ConsoleInput, InputSource, ScriptedInput
from src.adapters.registry import AdapterRegistry

__all__ = [
    "AdapterRegistry",
    "CommandRunner",
    "ConsoleInput",
    "InputSource",
    "MockPackageManager",
    "MockRunner",
    "MockSourceControl",
    "PackageManager",
    "ScriptedInput",
    "ServiceManager",
    "SourceControl",
]
