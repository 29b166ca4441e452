"""
Plans — provisioning and deploy policy on top of the engine.

    from src.core.plans import PlanContext, build_deploy_plan
"""

from src.core.plans.common import PlanContext
from src.core.plans.deploy import APP_KINDS, DeployAnswers, build_deploy_plan
from src.core.plans.provision import PROVISION_STEPS, ProvisionAnswers, build_provision_plan

__all__ = [
    "APP_KINDS",
    "DeployAnswers",
    "PROVISION_STEPS",
    "PlanContext",
    "ProvisionAnswers",
    "build_deploy_plan",
    "build_provision_plan",
]
