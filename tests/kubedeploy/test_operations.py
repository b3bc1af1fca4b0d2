"""
Tests for rollout orchestration, rollback, rolling restart, scale and remove.
"""

from unittest.mock import Mock

import pytest

from kubedeploy.deployment.operations import (
    find_single_live,
    instant_rollback,
    list_releases,
    remove,
    rolling_restart,
    scale,
    start_rollout,
)
from kubedeploy.locking import ReleaseLock
from kubedeploy.models import LAST_ROLLING_RESTART_LABEL, RolloutOutcome
from kubedeploy.protocols import (
    EXIT_INVALID_ARGS,
    GatewayError,
    KubeDeployError,
    LockHeldError,
    ManifestError,
    PreconditionError,
    TemplateError,
)

LIVE = "checkout-1.2.0-master-abc1234"
TARGET = "checkout-1.1.0-master-0ld0001"


@pytest.fixture
def renderer():
    renderer = Mock()
    renderer.render.return_value = ["/work/.kubedeploy-temp/deployment.yaml"]
    return renderer


@pytest.fixture
def build():
    build = Mock()
    build.image_exists_remotely.return_value = True
    return build


@pytest.fixture
def engine():
    engine = Mock()
    engine.run.return_value = RolloutOutcome.PROMOTED
    return engine


class TestStartRollout:
    """Test the rollout wrapper around the engine."""

    def test_existing_image_is_not_rebuilt(self, ctx, gateway, renderer, build, engine):
        outcome = start_rollout(ctx, gateway, renderer, build, Mock(), engine=engine)

        assert outcome == RolloutOutcome.PROMOTED
        build.image_exists_remotely.assert_called_once_with(ctx.resolved.image_full_path)
        build.build_test_push.assert_not_called()
        engine.run.assert_called_once_with(ctx, renderer.render.return_value)

    def test_missing_image_is_built_first(self, ctx, gateway, renderer, build, engine):
        build.image_exists_remotely.return_value = False

        start_rollout(ctx, gateway, renderer, build, Mock(), engine=engine)

        build.build_test_push.assert_called_once_with(ctx)

    def test_lock_released_after_rollout(self, ctx, gateway, renderer, build, engine):
        start_rollout(ctx, gateway, renderer, build, Mock(), engine=engine)

        lock = ReleaseLock(ctx.resolved.app_name, ctx.settings.lock_dir)
        assert not lock.path.exists()
        renderer.cleanup.assert_called_once()

    def test_rolled_back_outcome_releases_lock(self, ctx, gateway, renderer, build, engine):
        engine.run.return_value = RolloutOutcome.ROLLED_BACK

        outcome = start_rollout(ctx, gateway, renderer, build, Mock(), engine=engine)

        assert outcome == RolloutOutcome.ROLLED_BACK
        assert not ReleaseLock(ctx.resolved.app_name, ctx.settings.lock_dir).path.exists()

    def test_engine_failure_cleans_up_and_releases_lock(self, ctx, gateway, renderer, build, engine):
        engine.run.side_effect = TemplateError("apply failed")

        with pytest.raises(TemplateError):
            start_rollout(ctx, gateway, renderer, build, Mock(), engine=engine)

        renderer.cleanup.assert_called_once()
        assert not ReleaseLock(ctx.resolved.app_name, ctx.settings.lock_dir).path.exists()

    def test_held_lock_stops_rollout(self, ctx, gateway, renderer, build, engine):
        other = ReleaseLock(ctx.resolved.app_name, ctx.settings.lock_dir)
        other.acquire()

        with pytest.raises(LockHeldError):
            start_rollout(ctx, gateway, renderer, build, Mock(), engine=engine)

        engine.run.assert_not_called()
        renderer.render.assert_not_called()
        assert other.path.exists()

    def test_force_takes_held_lock(self, make_ctx, gateway, renderer, build, engine):
        ctx = make_ctx(force=True)
        ReleaseLock(ctx.resolved.app_name, ctx.settings.lock_dir).acquire()

        outcome = start_rollout(ctx, gateway, renderer, build, Mock(), engine=engine)

        assert outcome == RolloutOutcome.PROMOTED

    def test_start_is_audited(self, ctx, gateway, renderer, build, engine, audit_entries):
        start_rollout(ctx, gateway, renderer, build, Mock(), engine=engine)

        started = [e for e in audit_entries() if e["action"] == "rollout_started"]
        assert started[0]["release"] == ctx.resolved.release_name
        assert started[0]["details"]["namespace"] == "staging"


class TestPreconditions:
    """Test the single-live-release precondition."""

    def test_single_live_release_found(self, ctx, gateway):
        gateway.add(LIVE, live=True)
        gateway.add(TARGET, target=True)

        assert find_single_live(ctx, gateway).name == LIVE

    def test_no_live_release(self, ctx, gateway):
        gateway.add(TARGET, target=True)

        with pytest.raises(PreconditionError):
            find_single_live(ctx, gateway)

    def test_two_live_releases_are_listed(self, ctx, gateway):
        gateway.add(LIVE, live=True)
        gateway.add(TARGET, live=True)

        with pytest.raises(PreconditionError) as exc_info:
            find_single_live(ctx, gateway)

        assert sorted(exc_info.value.offending) == sorted([LIVE, TARGET])
        assert f"\t{LIVE}" in str(exc_info.value)

    def test_live_release_of_other_branch_is_ignored(self, ctx, gateway):
        gateway.add(LIVE, live=True)
        gateway.add("checkout-1.2.0-develop-abc1234", app="checkout-develop", live=True)

        assert find_single_live(ctx, gateway).name == LIVE


class TestInstantRollback:
    """Test the live/rollback-target swap."""

    def test_roles_swap(self, ctx, gateway, make_supervisor):
        gateway.add(TARGET, replicas=0, target=True)
        gateway.add(LIVE, replicas=3, live=True)

        result = instant_rollback(ctx, gateway, make_supervisor([(True, 61)]))

        assert result.name == TARGET
        assert gateway.live() == [TARGET]
        assert gateway.rollback_targets() == [LIVE]
        assert gateway.releases[TARGET].replicas == 3
        assert gateway.releases[LIVE].replicas == 0

    def test_target_scaled_before_live_is_scaled_down(self, ctx, gateway, make_supervisor):
        gateway.add(TARGET, replicas=0, target=True)
        gateway.add(LIVE, replicas=3, live=True)

        instant_rollback(ctx, gateway, make_supervisor([(True, 61)]))

        calls = [c for c in gateway.calls if c[0] in ("update", "wait")]
        assert calls == [
            ("update", TARGET, 3),
            ("wait", TARGET),
            ("update", LIVE, 0),
            ("wait", LIVE),
        ]

    def test_live_at_zero_rolls_back_to_one_pod(self, ctx, gateway, make_supervisor):
        gateway.add(TARGET, replicas=0, target=True)
        gateway.add(LIVE, replicas=0, live=True)

        instant_rollback(ctx, gateway, make_supervisor([(True, 61)]))

        assert gateway.releases[TARGET].replicas == 1

    def test_observation_hold_is_advisory(self, ctx, gateway, make_supervisor):
        gateway.add(TARGET, replicas=0, target=True)
        gateway.add(LIVE, replicas=2, live=True)

        instant_rollback(ctx, gateway, make_supervisor([(False, 5)]))

        assert gateway.live() == [TARGET]
        assert gateway.rollback_targets() == [LIVE]

    def test_no_canary_skips_observation(self, make_ctx, gateway, make_supervisor):
        ctx = make_ctx(no_canary=True)
        gateway.add(TARGET, replicas=0, target=True)
        gateway.add(LIVE, replicas=2, live=True)

        instant_rollback(ctx, gateway, make_supervisor([]))

        assert gateway.live() == [TARGET]

    def test_missing_target_is_precondition_failure(self, ctx, gateway, make_supervisor):
        gateway.add(LIVE, replicas=2, live=True)

        with pytest.raises(PreconditionError) as exc_info:
            instant_rollback(ctx, gateway, make_supervisor([]))

        assert exc_info.value.offending == [LIVE]
        assert gateway.updates() == []

    def test_two_targets_is_precondition_failure(self, ctx, gateway, make_supervisor):
        gateway.add(LIVE, replicas=2, live=True)
        gateway.add(TARGET, target=True)
        gateway.add("checkout-1.0.0-master-aaaaaaa", target=True)

        with pytest.raises(PreconditionError):
            instant_rollback(ctx, gateway, make_supervisor([]))

        assert gateway.updates() == []

    def test_rollback_is_audited(self, ctx, gateway, make_supervisor, audit_entries):
        gateway.add(TARGET, replicas=0, target=True)
        gateway.add(LIVE, replicas=3, live=True)

        instant_rollback(ctx, gateway, make_supervisor([(True, 61)]))

        entry = [e for e in audit_entries() if e["action"] == "rollback"][0]
        assert entry["release"] == TARGET
        assert entry["details"]["previous_live"] == LIVE

    def test_target_not_ready_reports_both_live(self, ctx, gateway, make_supervisor, audit_entries):
        gateway.add(TARGET, replicas=0, target=True)
        gateway.add(LIVE, replicas=3, live=True)
        gateway.wait_exit_codes[TARGET] = 1

        with pytest.raises(GatewayError) as exc_info:
            instant_rollback(ctx, gateway, make_supervisor([]))

        message = str(exc_info.value)
        assert "both" in message
        assert TARGET in message
        assert LIVE in message
        assert gateway.live() == sorted([LIVE, TARGET])
        assert gateway.releases[LIVE].replicas == 3

        entry = [e for e in audit_entries() if e["action"] == "rollback"][0]
        assert entry["success"] is False
        assert entry["details"]["state"] == "both_live"

    def test_old_release_not_scaled_down_is_reported(self, ctx, gateway, make_supervisor):
        gateway.add(TARGET, replicas=0, target=True)
        gateway.add(LIVE, replicas=3, live=True)
        gateway.wait_exit_codes[LIVE] = 1

        with pytest.raises(GatewayError, match="did not finish scaling down"):
            instant_rollback(ctx, gateway, make_supervisor([(True, 61)]))

        assert gateway.live() == [TARGET]
        assert gateway.rollback_targets() == [LIVE]


class TestRollingRestart:
    """Test pod recreation via the pod template label."""

    def test_sets_restart_label_and_waits(self, ctx, gateway):
        gateway.add(LIVE, replicas=3, live=True)

        rolling_restart(ctx, gateway, now=lambda: 1_700_000_123.9)

        assert gateway.releases[LIVE].template_labels[LAST_ROLLING_RESTART_LABEL] == "1700000123"
        assert gateway.releases[LIVE].replicas == 3
        assert gateway.calls[-1] == ("wait", LIVE)

    def test_requires_single_live(self, ctx, gateway):
        with pytest.raises(PreconditionError):
            rolling_restart(ctx, gateway)


class TestScale:
    """Test scaling the live release."""

    def test_scales_live_release_and_waits_on_it(self, ctx, gateway):
        gateway.add(TARGET, replicas=0, target=True)
        gateway.add(LIVE, replicas=3, live=True)

        scale(ctx, gateway, 7)

        assert gateway.releases[LIVE].replicas == 7
        assert gateway.releases[TARGET].replicas == 0
        assert gateway.calls[-1] == ("wait", LIVE)

    def test_negative_replicas_rejected(self, ctx, gateway):
        gateway.add(LIVE, replicas=3, live=True)

        with pytest.raises(KubeDeployError) as exc_info:
            scale(ctx, gateway, -1)

        assert exc_info.value.exit_code == EXIT_INVALID_ARGS
        assert gateway.updates() == []

    def test_requires_single_live(self, ctx, gateway):
        gateway.add(LIVE, live=True)
        gateway.add(TARGET, live=True)

        with pytest.raises(PreconditionError):
            scale(ctx, gateway, 2)


class TestListReleases:
    """Test listing the release set."""

    def test_lists_newest_first(self, ctx, gateway):
        gateway.add(TARGET, target=True)
        gateway.add(LIVE, live=True)
        gateway.add("payments-1.0.0-master-aaaaaaa", app="payments-master")

        names = [r.name for r in list_releases(ctx, gateway)]

        assert names == [LIVE, TARGET]


class TestRemove:
    """Test manifest-driven teardown."""

    def write_manifest(self, tmp_path, name, content):
        path = tmp_path / name
        path.write_text(content)
        return path

    def test_deletes_every_object(self, ctx, gateway, renderer, tmp_path):
        gateway.add(LIVE, live=True)
        deployment = self.write_manifest(
            tmp_path,
            "deployment.yaml",
            f"apiVersion: apps/v1\nkind: Deployment\nmetadata:\n  name: {LIVE}\n",
        )
        others = self.write_manifest(
            tmp_path,
            "service.yaml",
            "kind: Service\nmetadata:\n  name: checkout\n---\n"
            "kind: Secret\nmetadata:\n  name: checkout-env\n---\n"
            "kind: Ingress\nmetadata:\n  name: checkout\n",
        )
        renderer.render.return_value = [deployment, others]

        removed = remove(ctx, gateway, renderer)

        assert [o.kind for o in removed] == ["Deployment", "Service", "Secret", "Ingress"]
        assert LIVE not in gateway.releases
        assert gateway.deleted == [("Service", "checkout"), ("Secret", "checkout-env"), ("Ingress", "checkout")]
        renderer.cleanup.assert_called_once()
        assert not ReleaseLock(ctx.resolved.app_name, ctx.settings.lock_dir).path.exists()

    def test_unknown_kind_deletes_nothing(self, ctx, gateway, renderer, tmp_path):
        service = self.write_manifest(
            tmp_path, "service.yaml", "kind: Service\nmetadata:\n  name: checkout\n"
        )
        cron = self.write_manifest(
            tmp_path, "cron.yaml", "kind: CronJob\nmetadata:\n  name: checkout-nightly\n"
        )
        renderer.render.return_value = [service, cron]

        with pytest.raises(ManifestError):
            remove(ctx, gateway, renderer)

        assert gateway.deleted == []
        renderer.cleanup.assert_called_once()

    def test_remove_respects_lock(self, ctx, gateway, renderer):
        ReleaseLock(ctx.resolved.app_name, ctx.settings.lock_dir).acquire()

        with pytest.raises(LockHeldError):
            remove(ctx, gateway, renderer)

        renderer.render.assert_not_called()
