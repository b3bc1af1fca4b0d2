"""
Canary rollout engine.

Takes an application from "old release live" to "new release live":

    created -> canary_one -> canary_full -> old_scaled_down -> promoted

canary_full is skipped when the new release only wants one pod, and
old_scaled_down when there is no previous release. A rejected hold, or a
cluster failure between the first canary pod coming up and the live marker
moving to the new release, rolls back by putting the previous release back
at its recorded size and deleting the new one.

Each state is durable in the cluster (replica counts and marker labels), so
a crashed run can be inspected with `kube-deploy list`.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from kubedeploy.audit import audit_rollout_action
from kubedeploy.config.settings import DeployContext
from kubedeploy.hold import HoldSupervisor
from kubedeploy.logging_config import log_rollout_event
from kubedeploy.models import (
    APP_LABEL,
    RELEASE_TIME_LABEL,
    CanaryStep,
    Release,
    ReleaseStatus,
    RolloutOutcome,
    RolloutState,
)
from kubedeploy.protocols import ClusterGateway, GatewayError, RolloutNotReadyError, TemplateError

logger = logging.getLogger(__name__)

FIRST_CANARY_PODS = 1
FIRST_CANARY_HOLD = 60
FULL_CANARY_HOLD = 300
FINAL_OBSERVATION_HOLD = 300


def canary_steps(desired_pods: int) -> List[CanaryStep]:
    """Canary points for a release that ultimately wants desired_pods."""
    steps = [CanaryStep(label="canary point 1", target_pods=FIRST_CANARY_PODS, hold_seconds=FIRST_CANARY_HOLD)]
    if desired_pods > FIRST_CANARY_PODS:
        steps.append(
            CanaryStep(label="canary point 2", target_pods=desired_pods, hold_seconds=FULL_CANARY_HOLD)
        )
    return steps


def previous_release(release_set: List[Release], new_release_name: str) -> Optional[Release]:
    """Most recent release in a newest-first set that is not the new release."""
    for release in release_set:
        if release.name != new_release_name:
            return release
    return None


@dataclass
class RolloutPlan:
    """What a single rollout run knows about the cluster."""

    release_name: str
    release_set: List[Release]
    old_release: Optional[Release]
    old_replicas: int
    desired_pods: int = 0
    state: RolloutState = RolloutState.CREATED
    skip_holds: bool = False
    history: List[RolloutState] = field(default_factory=list)

    @property
    def states(self) -> List[str]:
        """Every state this run has been in, ending with the current one."""
        return [s.value for s in self.history] + [self.state.value]

    def advance(self, state: RolloutState) -> None:
        self.history.append(self.state)
        self.state = state
        log_rollout_event(state.value, self.release_name, {"desired_pods": self.desired_pods})


class CanaryRolloutEngine:
    """Drives one canary rollout through its states."""

    def __init__(
        self,
        gateway: ClusterGateway,
        supervisor: HoldSupervisor,
        now: Callable[[], float] = time.time,
    ):
        """
        Initialize the engine.

        Args:
            gateway: Cluster access for the target namespace
            supervisor: Operator hold points
            now: Wall clock used for the release time label
        """
        self.gateway = gateway
        self.supervisor = supervisor
        self.now = now

    def plan(self, ctx: DeployContext) -> RolloutPlan:
        """Snapshot the release set and pick the release to fall back to."""
        resolved = ctx.resolved
        if self.gateway.get_release(resolved.release_name) is not None:
            logger.info(
                "=> Looks like there is an existing deployment by this name, "
                "so we'll just update/replace it."
            )

        release_set = self.gateway.list_releases({APP_LABEL: resolved.app_label})
        old_release = previous_release(release_set, resolved.release_name)
        if old_release:
            logger.info(
                f"=> Previous release is {old_release.name} ({old_release.replicas} pod(s))."
            )
        else:
            logger.info("=> No previous release found; this is a first deploy.")

        return RolloutPlan(
            release_name=resolved.release_name,
            release_set=release_set,
            old_release=old_release,
            old_replicas=old_release.replicas if old_release else 0,
            skip_holds=ctx.options.skip_canary,
        )

    def run(self, ctx: DeployContext, manifest_paths: List) -> RolloutOutcome:
        """
        Roll out the release described by ctx.

        Args:
            ctx: Deploy context
            manifest_paths: Rendered manifests to apply

        Returns:
            PROMOTED, or ROLLED_BACK / ABANDONED when a hold was rejected

        Raises:
            TemplateError: If a manifest fails to apply
            GatewayError: On cluster failures (after bailing out, once traffic has shifted)
        """
        plan = self.plan(ctx)
        started_at = int(self.now())

        for path in manifest_paths:
            if self.gateway.apply_manifest(str(path)) != 0:
                raise TemplateError(
                    f"=> Uh oh, there was a problem applying {path}. You should fix this first."
                )

        new_release = self.gateway.get_release(plan.release_name)
        if new_release is None:
            raise GatewayError(
                f"Deployment {plan.release_name} does not exist after applying the manifests. "
                "Do your templates name it with KD_RELEASE_NAME?"
            )
        plan.desired_pods = new_release.replicas

        steps = canary_steps(plan.desired_pods)

        def start_canary(release: Release) -> None:
            # A new release time also forces pods to be recreated on a re-rollout
            release.template_labels[RELEASE_TIME_LABEL] = str(started_at)
            release.replicas = steps[0].target_pods

        logger.info(f"=> Scaling to first canary point: {steps[0].target_pods} pod(s)")
        self.gateway.update_release(plan.release_name, start_canary)
        self._wait(plan.release_name)
        plan.advance(RolloutState.CANARY_ONE)

        try:
            for step in steps:
                if step.target_pods != FIRST_CANARY_PODS:
                    logger.info(
                        f"=> Scaling to next canary point: {step.target_pods} pod(s). This should "
                        "give the new pods roughly 50% of traffic (if the old deployment was the same size)."
                    )
                    self._scale(plan.release_name, step.target_pods)
                    plan.advance(RolloutState.CANARY_FULL)
                    guidance = "Now, let's wait for 5 minutes, watch the monitors, and let everything simmer."
                else:
                    guidance = (
                        "Wait for at least one minute to make sure the new pod(s) started okay, "
                        "and are getting some traffic."
                    )
                if not self._hold(plan, step.label, step.hold_seconds, guidance):
                    return self.bail_out(plan, f"hold rejected at {step.label}")

            if plan.old_release:
                logger.info("=> Scaling down old deployment, leaving only new deployment pods.")
                self._scale(plan.old_release.name, 0)
                plan.advance(RolloutState.OLD_SCALED_DOWN)
                guidance = (
                    "Now, let's wait for another 5 minutes, watch the monitors again, "
                    "and make sure we're confident with the new deployment."
                )
                if not self._hold(plan, "final observation", FINAL_OBSERVATION_HOLD, guidance):
                    return self.bail_out(plan, "hold rejected at final observation")

            self._swap_markers(plan)
        except GatewayError as e:
            logger.error(f"=> Cluster operation failed mid-rollout: {e}")
            self.bail_out(plan, f"cluster failure: {e}")
            raise

        self.promote(plan)
        return RolloutOutcome.PROMOTED

    def _hold(self, plan: RolloutPlan, label: str, seconds: int, guidance: str) -> bool:
        if not plan.skip_holds:
            logger.info(f"=> {guidance}")
        return self.supervisor.hold(label, seconds, skip=plan.skip_holds, release=plan.release_name)

    def _wait(self, name: str) -> None:
        exit_code = self.gateway.wait_for_rollout_ready(name)
        if exit_code != 0:
            raise RolloutNotReadyError(
                f"Rollout of {name} did not become ready (kubectl exit code {exit_code})"
            )

    def _scale(self, name: str, replicas: int) -> Release:
        def set_replicas(release: Release) -> None:
            release.replicas = replicas

        release = self.gateway.update_release(name, set_replicas)
        self._wait(name)
        return release

    def _swap_markers(self, plan: RolloutPlan) -> None:
        """Mark the new release live and the old one as the rollback target."""
        logger.info("=> Tagging the new release as live.")
        self.gateway.update_release(
            plan.release_name, lambda release: release.set_status(ReleaseStatus.LIVE)
        )

        old = plan.old_release
        if old:
            logger.info(
                f"=> Tagging release {old.name} as the rollback target. "
                "You can roll back to it in one command with `kube-deploy rollback`."
            )
            self.gateway.update_release(
                old.name, lambda release: release.set_status(ReleaseStatus.ROLLBACK_TARGET)
            )
        else:
            logger.info("=> Since there are no previous deployments, no rollback target will be assigned.")

    def promote(self, plan: RolloutPlan) -> List[str]:
        """
        Delete every release other than the new one and its rollback target.

        Expects the markers to be in place already.

        Returns:
            Names of the deleted releases
        """
        old = plan.old_release
        retired = []
        for release in plan.release_set:
            if release.name in (plan.release_name, old.name if old else None):
                continue
            logger.info(f"=> Cleaning up older deployment: {release.name}.")
            self.gateway.delete_release(release)
            retired.append(release.name)

        plan.advance(RolloutState.PROMOTED)
        audit_rollout_action(
            "promoted",
            plan.release_name,
            {
                "rollback_target": old.name if old else None,
                "replicas": plan.desired_pods,
                "retired": retired,
                "states": plan.states,
            },
            success=True,
        )
        logger.info("=> You're all done, great job!")
        return retired

    def bail_out(self, plan: RolloutPlan, reason: str) -> RolloutOutcome:
        """
        Put the previous release back in charge and delete the new one.

        The previous release returns to the size it had when the rollout
        started (or to the new release's size if it had been scaled to 0).
        Without a previous release nothing is touched.
        """
        logger.warning("=> Okay, let's try and bail out safely.")
        old = plan.old_release
        if old is None:
            logger.warning(
                "=> Oh no, I don't have anywhere to roll back to! I'll leave things as they are now, "
                "but you'll need to clean up yourself, or do another rollout forward."
            )
            audit_rollout_action("bailout", plan.release_name, {"reason": reason, "restored": None})
            log_rollout_event("abandoned", plan.release_name, {"reason": reason}, level="WARNING")
            return RolloutOutcome.ABANDONED

        restore_to = plan.old_replicas or plan.desired_pods
        logger.info(f"=> Scaling the previous release {old.name} back up to {restore_to} pods.")

        def restore(release: Release) -> None:
            release.replicas = restore_to
            release.set_status(ReleaseStatus.LIVE)

        self.gateway.update_release(old.name, restore)
        self._wait(old.name)

        logger.info("=> Deleting the deployment we created...")
        new_release = self.gateway.get_release(plan.release_name)
        if new_release is not None:
            self.gateway.delete_release(new_release)

        plan.advance(RolloutState.ROLLED_BACK)
        audit_rollout_action(
            "bailout",
            plan.release_name,
            {"reason": reason, "restored": old.name, "replicas": restore_to, "states": plan.states},
        )
        logger.warning("=> Sorry it didn't work out - better luck next time!")
        return RolloutOutcome.ROLLED_BACK
