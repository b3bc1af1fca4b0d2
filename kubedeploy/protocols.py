"""
Protocol definitions for kube-deploy.

This module defines the exit codes, the exception hierarchy and the
collaborator protocols shared by the rollout engine and the CLI.
"""

from typing import Callable, Dict, List, Optional, Protocol, Sequence

from kubedeploy.models import Release


# Exit code constants
EXIT_SUCCESS = 0  # Command succeeded (a rejected hold also ends here)
EXIT_ERROR = 1  # Fatal precondition violation or failure
EXIT_INVALID_ARGS = 2  # Invalid arguments


class Confirm(Protocol):
    """Protocol for asking the operator a yes/no question."""

    def __call__(self, prompt: str) -> bool:
        """Return True if the operator answered yes."""
        ...


class ClusterGateway(Protocol):
    """Protocol for the Deployment CRUD surface the engine relies on."""

    namespace: str

    def get_release(self, name: str) -> Optional[Release]:
        """Fetch a release by name, or None if it does not exist."""
        ...

    def list_releases(self, selector: Dict[str, str]) -> List[Release]:
        """List releases matching every label in the selector."""
        ...

    def update_release(self, name: str, mutator: Callable[[Release], None]) -> Release:
        """Atomically read, mutate and write back a release."""
        ...

    def delete_release(self, release: Release) -> None:
        """Delete a release."""
        ...

    def apply_manifest(self, path: str) -> int:
        """Apply a manifest file and return the exit status."""
        ...

    def wait_for_rollout_ready(self, name: str) -> int:
        """Block until the release's rollout converges and return the exit status."""
        ...

    def delete_service(self, name: str) -> None: ...

    def delete_secret(self, name: str) -> None: ...

    def delete_ingress(self, name: str) -> None: ...


# Exception Hierarchy


class KubeDeployError(Exception):
    """Base class for fatal kube-deploy errors."""

    exit_code: int = EXIT_ERROR

    def __init__(self, message: str, exit_code: Optional[int] = None) -> None:
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code


class PreconditionError(KubeDeployError):
    """Cluster state is not what the operation requires."""

    def __init__(self, message: str, offending: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.offending = list(offending)

    def __str__(self) -> str:
        text = super().__str__()
        if self.offending:
            text += "\n" + "\n".join(f"\t{name}" for name in self.offending)
        return text


class LockHeldError(KubeDeployError):
    """Another rollout holds the release lock."""


class ConfigError(KubeDeployError):
    """Configuration or stored auth data could not be read."""


class BuildError(KubeDeployError):
    """Building, testing or pushing the image failed."""


class PushDeclinedError(BuildError):
    """The operator chose not to push a freshly built image."""

    exit_code = EXIT_SUCCESS


class TemplateError(KubeDeployError):
    """Rendering or applying manifest templates failed."""


class ManifestError(KubeDeployError):
    """A manifest describes an object kube-deploy cannot handle."""


class GatewayError(KubeDeployError):
    """A cluster API call failed."""


class RolloutNotReadyError(GatewayError):
    """A rollout did not report ready."""
