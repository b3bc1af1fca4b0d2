"""
Fixtures for rollout tests: an in-memory cluster, a scripted operator and
deploy contexts for a sample "checkout" application.
"""

import copy
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import pytest

from kubedeploy.config.settings import (
    DeployContext,
    RepoConfig,
    RunOptions,
    ToolSettings,
    resolve_context,
)
from kubedeploy.hold import HoldSupervisor
from kubedeploy.models import (
    APP_LABEL,
    IS_LIVE_LABEL,
    ROLLBACK_TARGET_LABEL,
    TRUE,
    Release,
)

SAMPLE_CONFIG = {
    "dockerRepository": {
        "developmentRepositoryName": "acme-dev",
        "productionRepositoryName": "acme",
        "registryRoot": "eu.gcr.io",
    },
    "application": {
        "name": "checkout",
        "version": "1.2.0",
        "pathToKubernetesFiles": "kubernetes",
        "kubernetesTemplate": {
            "globalVariables": ["REPLICAS=2", "HOST=checkout.{{ .NAMESPACE }}.example.com"],
            "branchVariables": {"master,staging": ["REPLICAS=3"], "production": ["REPLICAS=6"]},
        },
    },
}


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedConfirm:
    """
    Operator that answers from a script.

    Each answer is a bool, or (bool, seconds) to let time pass before
    answering. Running out of answers fails the test.
    """

    def __init__(self, answers: List, clock: Optional[FakeClock] = None):
        self.answers = list(answers)
        self.clock = clock or FakeClock()
        self.prompts: List[str] = []

    def __call__(self, prompt: str) -> bool:
        self.prompts.append(prompt)
        if not self.answers:
            raise AssertionError(f"Unexpected prompt: {prompt}")
        answer = self.answers.pop(0)
        if isinstance(answer, tuple):
            answer, seconds = answer
            self.clock.advance(seconds)
        return answer


class FakeGateway:
    """In-memory stand-in for the cluster, recording every call."""

    def __init__(self, namespace: str = "staging"):
        self.namespace = namespace
        self.releases: Dict[str, Release] = {}
        self.on_apply: Dict[str, Release] = {}
        self.calls: List[tuple] = []
        self.apply_exit_code = 0
        # name -> exit code, or a list of exit codes consumed one wait at a time
        self.wait_exit_codes: Dict[str, Any] = {}
        # name -> exception, or a list of exceptions (None to succeed) consumed one update at a time
        self.update_errors: Dict[str, Any] = {}
        self.deleted: List[tuple] = []
        self._created = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def _next_created(self) -> datetime:
        self._created += timedelta(hours=1)
        return self._created

    def add(
        self,
        name: str,
        replicas: int = 2,
        app: str = "checkout-master",
        live: bool = False,
        target: bool = False,
    ) -> Release:
        labels = {APP_LABEL: app}
        if live:
            labels[IS_LIVE_LABEL] = TRUE
        if target:
            labels[ROLLBACK_TARGET_LABEL] = TRUE
        release = Release(
            name=name,
            namespace=self.namespace,
            replicas=replicas,
            labels=labels,
            template_labels={APP_LABEL: app},
            created_at=self._next_created(),
            resource_version="1",
        )
        self.releases[name] = release
        return release

    def creates_on_apply(self, path: str, name: str, replicas: int, app: str = "checkout-master") -> None:
        """Applying path creates (or updates) the named deployment."""
        self.on_apply[path] = Release(
            name=name,
            namespace=self.namespace,
            replicas=replicas,
            labels={APP_LABEL: app},
            template_labels={APP_LABEL: app},
        )

    def get_release(self, name: str) -> Optional[Release]:
        self.calls.append(("get", name))
        release = self.releases.get(name)
        return release.model_copy(deep=True) if release else None

    def list_releases(self, selector: Dict[str, str]) -> List[Release]:
        self.calls.append(("list", dict(selector)))
        matches = [
            r.model_copy(deep=True)
            for r in self.releases.values()
            if all(r.labels.get(k) == v for k, v in selector.items())
        ]
        matches.sort(key=lambda r: r.created_at, reverse=True)
        return matches

    def update_release(self, name: str, mutator: Callable[[Release], None]) -> Release:
        error = self.update_errors.get(name)
        if isinstance(error, list):
            error = error.pop(0) if error else None
        if error is not None:
            raise error
        release = self.releases[name].model_copy(deep=True)
        mutator(release)
        self.releases[name] = release
        self.calls.append(("update", name, release.replicas))
        return release.model_copy(deep=True)

    def delete_release(self, release: Release) -> None:
        self.calls.append(("delete", release.name))
        self.releases.pop(release.name, None)

    def apply_manifest(self, path: str) -> int:
        self.calls.append(("apply", path))
        if self.apply_exit_code != 0:
            return self.apply_exit_code
        template = self.on_apply.get(path)
        if template is not None:
            existing = self.releases.get(template.name)
            release = template.model_copy(deep=True)
            release.created_at = existing.created_at if existing else self._next_created()
            if existing:
                release.labels = {**existing.labels, **release.labels}
            self.releases[release.name] = release
        return 0

    def wait_for_rollout_ready(self, name: str) -> int:
        self.calls.append(("wait", name))
        code = self.wait_exit_codes.get(name, 0)
        if isinstance(code, list):
            return code.pop(0) if code else 0
        return code

    def delete_service(self, name: str) -> None:
        self.deleted.append(("Service", name))

    def delete_secret(self, name: str) -> None:
        self.deleted.append(("Secret", name))

    def delete_ingress(self, name: str) -> None:
        self.deleted.append(("Ingress", name))

    # Helpers for assertions

    def live(self) -> List[str]:
        return sorted(n for n, r in self.releases.items() if r.labels.get(IS_LIVE_LABEL) == TRUE)

    def rollback_targets(self) -> List[str]:
        return sorted(
            n for n, r in self.releases.items() if r.labels.get(ROLLBACK_TARGET_LABEL) == TRUE
        )

    def updates(self) -> List[tuple]:
        return [c for c in self.calls if c[0] == "update"]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def repo_dir(tmp_path):
    repo = tmp_path / "repo"
    (repo / "kubernetes").mkdir(parents=True)
    return repo


@pytest.fixture
def make_ctx(tmp_path, repo_dir):
    """Factory for DeployContexts of the sample app on a given branch."""

    def _make(branch: str = "master", sha: str = "abc1234", config: Optional[dict] = None, **options):
        repo_config = RepoConfig.model_validate(config or SAMPLE_CONFIG)
        resolved = resolve_context(repo_config, branch, sha, str(repo_dir))
        return DeployContext(
            config=repo_config,
            resolved=resolved,
            options=RunOptions(**options),
            settings=ToolSettings(lock_dir=str(tmp_path / "locks"), log_dir=str(tmp_path / "logs")),
        )

    return _make


@pytest.fixture
def ctx(make_ctx):
    return make_ctx()


@pytest.fixture
def audit_entries(audit_log):
    """Callable returning the audit entries written so far."""

    def _read() -> List[dict]:
        if not audit_log.exists():
            return []
        return [json.loads(line) for line in audit_log.read_text().splitlines() if line.strip()]

    return _read


@pytest.fixture
def scripted(clock):
    """Factory for a ScriptedConfirm sharing the test clock."""

    def _make(answers: List) -> ScriptedConfirm:
        return ScriptedConfirm(answers, clock)

    return _make


@pytest.fixture
def make_supervisor(clock, scripted):
    """Factory for a HoldSupervisor answering from a script."""

    def _make(answers: List) -> HoldSupervisor:
        return HoldSupervisor(confirm=scripted(answers), clock=clock)

    return _make


@pytest.fixture
def sample_config():
    """A fresh copy of the sample deploy.yaml contents, safe to modify."""
    return copy.deepcopy(SAMPLE_CONFIG)
