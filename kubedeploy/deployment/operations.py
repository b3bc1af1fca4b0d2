"""
Operations on an application's release set.

Each function takes the DeployContext plus its collaborators, so the CLI
decides which gateway, renderer and supervisor are used and the tests can
substitute fakes.
"""

import logging
import time
from typing import Callable, Dict, List, Optional

from kubedeploy.audit import audit_rollout_action
from kubedeploy.build.docker import BuildPipeline
from kubedeploy.config.settings import DeployContext
from kubedeploy.deployment.engine import CanaryRolloutEngine
from kubedeploy.hold import HoldSupervisor
from kubedeploy.kube.manifests import ManifestObject, parse_manifest
from kubedeploy.locking import ReleaseLock
from kubedeploy.logging_config import LogContext
from kubedeploy.models import (
    APP_LABEL,
    IS_LIVE_LABEL,
    LAST_ROLLING_RESTART_LABEL,
    ROLLBACK_TARGET_LABEL,
    TRUE,
    Release,
    ReleaseStatus,
    RolloutOutcome,
)
from kubedeploy.protocols import (
    EXIT_INVALID_ARGS,
    ClusterGateway,
    GatewayError,
    KubeDeployError,
    PreconditionError,
    RolloutNotReadyError,
)
from kubedeploy.templates import ManifestRenderer

logger = logging.getLogger(__name__)


def _app_selector(ctx: DeployContext, **markers: str) -> Dict[str, str]:
    selector = {APP_LABEL: ctx.resolved.app_label}
    selector.update(markers)
    return selector


def _wait(gateway: ClusterGateway, name: str) -> None:
    exit_code = gateway.wait_for_rollout_ready(name)
    if exit_code != 0:
        raise RolloutNotReadyError(
            f"Rollout of {name} did not become ready (kubectl exit code {exit_code})"
        )


def find_single_live(ctx: DeployContext, gateway: ClusterGateway) -> Release:
    """
    Return the one live release of the application.

    Raises:
        PreconditionError: If there is not exactly one live release
    """
    live = gateway.list_releases(_app_selector(ctx, **{IS_LIVE_LABEL: TRUE}))
    if len(live) != 1:
        raise PreconditionError(
            "=> Whoah, there's either more or less than one 'is-live' deployment. "
            "You should fix that first.",
            [r.name for r in live],
        )
    return live[0]


def list_releases(ctx: DeployContext, gateway: ClusterGateway) -> List[Release]:
    """The application's release set, newest first."""
    return gateway.list_releases(_app_selector(ctx))


def start_rollout(
    ctx: DeployContext,
    gateway: ClusterGateway,
    renderer: ManifestRenderer,
    build: BuildPipeline,
    supervisor: HoldSupervisor,
    engine: Optional[CanaryRolloutEngine] = None,
) -> RolloutOutcome:
    """
    Build the image if needed, then run a canary rollout under the release lock.

    Returns:
        How the rollout ended
    """
    resolved = ctx.resolved
    logger.info(
        "=> Checking to see if the docker image exists on the remote repository "
        "(so we know whether we have to build an image or not).\n=> This might take a minute..."
    )
    if build.image_exists_remotely(resolved.image_full_path):
        logger.info("=> Looks like an image already exists on the remote, so we'll use that.")
    else:
        logger.info("=> No image exists, so we'll build one now.")
        build.build_test_push(ctx)

    logger.info("=> Starting rollout.")
    engine = engine or CanaryRolloutEngine(gateway, supervisor)
    lock = ReleaseLock(resolved.app_name, ctx.settings.lock_dir)

    with LogContext(release=resolved.release_name, app=resolved.app_name, namespace=resolved.namespace):
        with lock.held(ctx.options.force):
            audit_rollout_action(
                "rollout_started",
                resolved.release_name,
                {"namespace": resolved.namespace, "image": resolved.image_full_path},
            )
            try:
                manifest_paths = renderer.render()
                outcome = engine.run(ctx, manifest_paths)
            finally:
                renderer.cleanup()

    if outcome == RolloutOutcome.PROMOTED:
        logger.info(f"=> {resolved.release_name} is live.")
    return outcome


def instant_rollback(
    ctx: DeployContext, gateway: ClusterGateway, supervisor: HoldSupervisor
) -> Release:
    """
    Swap the live release and the rollback target.

    Returns:
        The release that is live after the rollback

    Raises:
        PreconditionError: Unless there is exactly one live release and one rollback target
    """
    live = gateway.list_releases(_app_selector(ctx, **{IS_LIVE_LABEL: TRUE}))
    targets = gateway.list_releases(_app_selector(ctx, **{ROLLBACK_TARGET_LABEL: TRUE}))
    if len(live) != 1 or len(targets) != 1:
        raise PreconditionError(
            "=> Whoah, there's either more or less than one 'is-live' deployment or "
            "'rollback-target' deployment. You should fix that first.",
            [r.name for r in live] + [r.name for r in targets],
        )

    current = live[0]
    target = targets[0]
    replicas = current.replicas if current.replicas > 0 else 1
    logger.info(f"=> Rolling back to {target.name}, pod count {replicas}.")

    def make_live(release: Release) -> None:
        release.replicas = replicas
        release.set_status(ReleaseStatus.LIVE)

    gateway.update_release(target.name, make_live)
    try:
        _wait(gateway, target.name)

        if not ctx.options.skip_canary:
            logger.info("=> Wait for one minute to make sure that the old pods came up correctly.")
            # Advisory only: the rollback target is already serving
            supervisor.hold("rollback observation", 60, release=target.name)

        def retire_to_target(release: Release) -> None:
            release.replicas = 0
            release.set_status(ReleaseStatus.ROLLBACK_TARGET)

        logger.info("=> Wait for the old pods to scale down to 0.")
        gateway.update_release(current.name, retire_to_target)
    except GatewayError as e:
        audit_rollout_action(
            "rollback",
            target.name,
            {"previous_live": current.name, "replicas": replicas, "state": "both_live"},
            success=False,
        )
        raise GatewayError(
            f"=> Rollback stopped part way: both {target.name} and {current.name} are marked "
            f"'is-live' ({target.name} was asked for {replicas} pod(s), {current.name} still has "
            f"{current.replicas}). Fix their labels and replica counts before rolling back again. "
            f"Cause: {e}"
        ) from e

    try:
        _wait(gateway, current.name)
    except GatewayError as e:
        audit_rollout_action(
            "rollback",
            target.name,
            {"previous_live": current.name, "replicas": replicas, "state": "scale_down_pending"},
            success=False,
        )
        raise GatewayError(
            f"=> {target.name} is live and {current.name} is the rollback target, but {current.name} "
            f"did not finish scaling down to 0. Cause: {e}"
        ) from e

    audit_rollout_action(
        "rollback", target.name, {"previous_live": current.name, "replicas": replicas}, success=True
    )
    logger.info(f"=> The deployment has been successfully rolled back to: {target.name}.")
    return gateway.get_release(target.name) or target


def rolling_restart(
    ctx: DeployContext, gateway: ClusterGateway, now: Callable[[], float] = time.time
) -> Release:
    """Recreate every pod of the live release by touching its pod template."""
    live = find_single_live(ctx, gateway)
    stamp = str(int(now()))

    def touch(release: Release) -> None:
        release.template_labels[LAST_ROLLING_RESTART_LABEL] = stamp

    updated = gateway.update_release(live.name, touch)
    _wait(gateway, live.name)
    audit_rollout_action("rolling_restart", live.name, {"restarted_at": stamp}, success=True)
    logger.info("=> All pods have been recreated.")
    return updated


def scale(ctx: DeployContext, gateway: ClusterGateway, replicas: int) -> Release:
    """Set the replica count of the live release."""
    if replicas < 0:
        raise KubeDeployError(
            f"Replica count must be zero or more, got {replicas}", exit_code=EXIT_INVALID_ARGS
        )
    live = find_single_live(ctx, gateway)
    logger.info(f"=> Starting to scale {live.name} to {replicas} replica(s).")

    def set_replicas(release: Release) -> None:
        release.replicas = replicas

    updated = gateway.update_release(live.name, set_replicas)
    _wait(gateway, live.name)
    audit_rollout_action(
        "scale", live.name, {"from": live.replicas, "to": replicas}, success=True
    )
    logger.info(f"=> Finished scaling to {replicas} replica(s).")
    return updated


def remove(
    ctx: DeployContext, gateway: ClusterGateway, renderer: ManifestRenderer
) -> List[ManifestObject]:
    """
    Delete every object the application's manifests describe.

    All manifests are parsed before anything is deleted, so an unknown kind
    aborts the removal without side effects.

    Returns:
        The objects that were deleted
    """
    resolved = ctx.resolved
    lock = ReleaseLock(resolved.app_name, ctx.settings.lock_dir)
    with lock.held(ctx.options.force):
        try:
            objects: List[ManifestObject] = []
            for path in renderer.render():
                objects.extend(parse_manifest(path))

            for obj in objects:
                logger.info(f"=> Deleting {obj.kind} {obj.name}")
                obj.delete(gateway)
        finally:
            renderer.cleanup()

    audit_rollout_action(
        "remove",
        resolved.release_name,
        {"objects": [f"{o.kind}/{o.name}" for o in objects]},
        success=True,
    )
    return objects
