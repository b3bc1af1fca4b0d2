"""
Simple data models for kube-deploy.

Keep it simple. Keep it typed. Keep it working.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, Field, model_validator

# Labels are the only persistence layer kube-deploy has.
APP_LABEL = "app"
IS_LIVE_LABEL = "kubedeploy-is-live"
ROLLBACK_TARGET_LABEL = "kubedeploy-rollback-target"
RELEASE_TIME_LABEL = "kubedeploy-releasetime"
LAST_ROLLING_RESTART_LABEL = "kubedeploy-last-rolling-restart"
TRUE = "true"


class ReleaseStatus(str, Enum):
    """Role a release plays within its release set."""

    CANDIDATE = "candidate"
    LIVE = "live"
    ROLLBACK_TARGET = "rollback_target"
    RETIRED = "retired"


class RolloutState(str, Enum):
    """States of the canary rollout state machine."""

    CREATED = "created"
    CANARY_ONE = "canary_one"
    CANARY_FULL = "canary_full"
    OLD_SCALED_DOWN = "old_scaled_down"
    PROMOTED = "promoted"
    ROLLED_BACK = "rolled_back"


class RolloutOutcome(str, Enum):
    """How a rollout ended without a fatal error."""

    PROMOTED = "promoted"
    ROLLED_BACK = "rolled_back"
    # Hold rejected on a first deploy: nothing to restore to
    ABANDONED = "abandoned"


def status_from_labels(labels: Dict[str, str]) -> ReleaseStatus:
    """Derive a release status from its label set."""
    if labels.get(IS_LIVE_LABEL) == TRUE:
        return ReleaseStatus.LIVE
    if labels.get(ROLLBACK_TARGET_LABEL) == TRUE:
        return ReleaseStatus.ROLLBACK_TARGET
    return ReleaseStatus.CANDIDATE


class Release(BaseModel):
    """One deployed revision of an application (a Kubernetes Deployment)."""

    name: str = Field(..., description="Release name, also the Deployment name")
    namespace: str = Field("default", description="Kubernetes namespace")
    replicas: int = Field(0, description="Desired replica count")
    labels: Dict[str, str] = Field(default_factory=dict, description="Deployment labels")
    template_labels: Dict[str, str] = Field(
        default_factory=dict, description="Pod template labels"
    )
    created_at: Optional[datetime] = Field(None, description="Creation timestamp")
    resource_version: Optional[str] = Field(
        None, description="Freshness token used for read-modify-write updates"
    )
    status: ReleaseStatus = Field(ReleaseStatus.CANDIDATE, description="Derived from labels")

    @model_validator(mode="after")
    def sync_status_from_labels(self) -> "Release":
        """Keep the status in step with the labels it was loaded with."""
        if self.status != ReleaseStatus.RETIRED:
            self.status = status_from_labels(self.labels)
        return self

    @property
    def is_live(self) -> bool:
        return self.status == ReleaseStatus.LIVE

    @property
    def is_rollback_target(self) -> bool:
        return self.status == ReleaseStatus.ROLLBACK_TARGET

    def set_status(self, status: ReleaseStatus) -> None:
        """
        Move this release to a new status, rewriting its marker labels.

        This is the only place the status enum and the marker labels change,
        so the two can never disagree.
        """
        self.labels.pop(IS_LIVE_LABEL, None)
        self.labels.pop(ROLLBACK_TARGET_LABEL, None)
        if status == ReleaseStatus.LIVE:
            self.labels[IS_LIVE_LABEL] = TRUE
        elif status == ReleaseStatus.ROLLBACK_TARGET:
            self.labels[ROLLBACK_TARGET_LABEL] = TRUE
        self.status = status


class CanaryStep(BaseModel):
    """A transient canary point: scale to target_pods, then hold."""

    label: str
    target_pods: int
    hold_seconds: int
