"""
Domain models — Pydantic types for vpsdeploy.

All models are re-exported here for convenient access:

    from src.core.models import ApplyResult, DeployConfig, Receipt, Template
"""

from src.core.models.action import ApplyResult, CheckResult, Receipt
from src.core.models.config import DeployConfig, PathsConfig
from src.core.models.outcome import ExitCode, GroupOutcome, TransactionReport
from src.core.models.template import Template

__all__ = [
    # action.py
    "ApplyResult",
    "CheckResult",
    "Receipt",
    # config.py
    "DeployConfig",
    "PathsConfig",
    # outcome.py
    "ExitCode",
    "GroupOutcome",
    "TransactionReport",
    # template.py
    "Template",
]
