"""kube-deploy - Canary rollouts and instant rollbacks for Kubernetes deployments."""

__version__ = "1.4.0"

from .naming import release_name, sanitize_branch

__all__ = ["release_name", "sanitize_branch"]
