"""vpsdeploy — idempotent VPS provisioning and app deployment."""

__version__ = "0.1.0"
