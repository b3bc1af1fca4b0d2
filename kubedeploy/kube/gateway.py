"""
Kubernetes gateway for rollout operations.

Deployment reads and writes go through the official client. Applying
manifests and waiting on rollouts shell out to kubectl so the operator sees
kubectl's own progress output.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from kubernetes import client, config
from kubernetes.client.rest import ApiException

from kubedeploy.models import Release
from kubedeploy.protocols import GatewayError
from kubedeploy.utils.commands import kubectl_cmd, stream_command_exit_code

logger = logging.getLogger(__name__)

MAX_UPDATE_ATTEMPTS = 5


def label_selector(selector: Dict[str, str]) -> str:
    """Render a label dict as a Kubernetes equality selector."""
    return ",".join(f"{key}={value}" for key, value in sorted(selector.items()))


def deployment_to_release(deployment: Any) -> Release:
    """Convert a V1Deployment into a Release."""
    metadata = deployment.metadata
    spec = deployment.spec
    template_metadata = spec.template.metadata if spec and spec.template else None
    return Release(
        name=metadata.name,
        namespace=metadata.namespace or "default",
        replicas=(spec.replicas if spec and spec.replicas is not None else 0),
        labels=dict(metadata.labels or {}),
        template_labels=dict((template_metadata.labels if template_metadata else None) or {}),
        created_at=metadata.creation_timestamp,
        resource_version=metadata.resource_version,
    )


def apply_release_to_deployment(release: Release, deployment: Any) -> None:
    """Write a Release's mutable fields back onto a V1Deployment."""
    deployment.metadata.labels = dict(release.labels)
    deployment.spec.replicas = release.replicas
    if deployment.spec.template.metadata is None:
        deployment.spec.template.metadata = client.V1ObjectMeta()
    deployment.spec.template.metadata.labels = dict(release.template_labels)


class KubeGateway:
    """Deployment CRUD against one namespace of a cluster."""

    def __init__(
        self,
        namespace: str,
        context: Optional[str] = None,
        in_cluster: bool = False,
        rollout_timeout: int = 600,
    ):
        """
        Initialize the Kubernetes client.

        Args:
            namespace: Target Kubernetes namespace
            context: kubeconfig context name (optional)
            in_cluster: Whether running inside the cluster
            rollout_timeout: Seconds kubectl waits for a rollout to converge
        """
        self.namespace = namespace
        self.context = context
        self.rollout_timeout = rollout_timeout

        try:
            if in_cluster:
                config.load_incluster_config()
            elif context:
                config.load_kube_config(context=context)
            else:
                config.load_kube_config()
        except config.ConfigException as e:
            raise GatewayError(f"Failed to load Kubernetes configuration: {e}")

        self.apps_v1 = client.AppsV1Api()
        self.core_v1 = client.CoreV1Api()
        self.networking_v1 = client.NetworkingV1Api()
        logger.debug(f"Kubernetes client initialized for namespace: {namespace}")

    def get_release(self, name: str) -> Optional[Release]:
        """Fetch a release by name, or None if it does not exist."""
        try:
            deployment = self.apps_v1.read_namespaced_deployment(
                name=name, namespace=self.namespace
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise GatewayError(f"Failed to read deployment {name}: {e.reason}")
        return deployment_to_release(deployment)

    def list_releases(self, selector: Dict[str, str]) -> List[Release]:
        """
        List releases matching every label in the selector.

        Returns:
            Releases ordered newest first by creation time
        """
        try:
            deployments = self.apps_v1.list_namespaced_deployment(
                namespace=self.namespace, label_selector=label_selector(selector)
            )
        except ApiException as e:
            raise GatewayError(f"Failed to list deployments ({label_selector(selector)}): {e.reason}")

        releases = [deployment_to_release(d) for d in deployments.items]
        releases.sort(
            key=lambda r: r.created_at.timestamp() if r.created_at else 0.0, reverse=True
        )
        return releases

    def update_release(self, name: str, mutator: Callable[[Release], None]) -> Release:
        """
        Read a deployment, apply the mutator and write it back.

        The write carries the resourceVersion that was read, so a concurrent
        change makes the API server answer 409; the read and the mutator are
        then repeated.
        """
        for attempt in range(1, MAX_UPDATE_ATTEMPTS + 1):
            try:
                deployment = self.apps_v1.read_namespaced_deployment(
                    name=name, namespace=self.namespace
                )
            except ApiException as e:
                raise GatewayError(f"Failed to read deployment {name} for update: {e.reason}")

            release = deployment_to_release(deployment)
            mutator(release)
            apply_release_to_deployment(release, deployment)

            try:
                updated = self.apps_v1.replace_namespaced_deployment(
                    name=name, namespace=self.namespace, body=deployment
                )
            except ApiException as e:
                if e.status == 409:
                    logger.debug(
                        f"Conflict updating {name} (attempt {attempt}/{MAX_UPDATE_ATTEMPTS}), retrying"
                    )
                    continue
                raise GatewayError(f"Failed to update deployment {name}: {e.reason}")
            return deployment_to_release(updated)

        raise GatewayError(
            f"Gave up updating deployment {name} after {MAX_UPDATE_ATTEMPTS} conflicting writes"
        )

    def delete_release(self, release: Release) -> None:
        """Delete the deployment behind a release."""
        self._delete("deployment", release.name, self.apps_v1.delete_namespaced_deployment)

    def delete_service(self, name: str) -> None:
        self._delete("service", name, self.core_v1.delete_namespaced_service)

    def delete_secret(self, name: str) -> None:
        self._delete("secret", name, self.core_v1.delete_namespaced_secret)

    def delete_ingress(self, name: str) -> None:
        self._delete("ingress", name, self.networking_v1.delete_namespaced_ingress)

    def _delete(self, kind: str, name: str, delete_call: Callable[..., Any]) -> None:
        try:
            delete_call(
                name=name,
                namespace=self.namespace,
                body=client.V1DeleteOptions(propagation_policy="Foreground"),
            )
        except ApiException as e:
            if e.status == 404:
                logger.warning(f"=> Tried to delete {kind} {name}, but it was already gone.")
                return
            raise GatewayError(f"Failed to delete {kind} {name}: {e.reason}")
        logger.info(f"=> Deleted {kind} {name}.")

    def apply_manifest(self, path: str) -> int:
        """Apply a manifest file with kubectl and return its exit status."""
        return stream_command_exit_code(kubectl_cmd("apply", "-f", str(path)))

    def wait_for_rollout_ready(self, name: str) -> int:
        """Block on kubectl rollout status and return its exit status."""
        return stream_command_exit_code(
            kubectl_cmd(
                "rollout",
                "status",
                f"--namespace={self.namespace}",
                f"deployment/{name}",
                f"--timeout={self.rollout_timeout}s",
            )
        )
