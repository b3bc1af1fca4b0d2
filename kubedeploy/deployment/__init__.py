"""Canary rollout engine and the operations built around it."""

from kubedeploy.deployment.engine import CanaryRolloutEngine
from kubedeploy.deployment.operations import (
    find_single_live,
    instant_rollback,
    list_releases,
    remove,
    rolling_restart,
    scale,
    start_rollout,
)

__all__ = [
    "CanaryRolloutEngine",
    "find_single_live",
    "instant_rollback",
    "list_releases",
    "remove",
    "rolling_restart",
    "scale",
    "start_rollout",
]
