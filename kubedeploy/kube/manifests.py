"""
Objects described by rendered manifest files.

Only the kinds kube-deploy creates are understood; anything else in a
manifest stops a teardown before it deletes half an application.
"""

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Union

import yaml
from pydantic import BaseModel, Field

from kubedeploy.models import Release
from kubedeploy.protocols import ClusterGateway, ManifestError

logger = logging.getLogger(__name__)


class ManifestObject(BaseModel, ABC):
    """A named object from a manifest that knows how to delete itself."""

    kind: str = Field(..., description="Kubernetes object kind")
    name: str = Field(..., description="metadata.name")
    namespace: str = Field("", description="metadata.namespace, if the manifest sets one")

    @abstractmethod
    def delete(self, gateway: ClusterGateway) -> None:
        """Delete this object through the gateway."""


class DeploymentObject(ManifestObject):
    kind: str = "Deployment"

    def delete(self, gateway: ClusterGateway) -> None:
        gateway.delete_release(Release(name=self.name, namespace=self.namespace or gateway.namespace))


class ServiceObject(ManifestObject):
    kind: str = "Service"

    def delete(self, gateway: ClusterGateway) -> None:
        gateway.delete_service(self.name)


class SecretObject(ManifestObject):
    kind: str = "Secret"

    def delete(self, gateway: ClusterGateway) -> None:
        gateway.delete_secret(self.name)


class IngressObject(ManifestObject):
    kind: str = "Ingress"

    def delete(self, gateway: ClusterGateway) -> None:
        gateway.delete_ingress(self.name)


MANIFEST_KINDS = {
    "Deployment": DeploymentObject,
    "Service": ServiceObject,
    "Secret": SecretObject,
    "Ingress": IngressObject,
}


def manifest_object(document: Dict[str, Any], source: str = "<manifest>") -> ManifestObject:
    """
    Build the ManifestObject for one parsed YAML document.

    Raises:
        ManifestError: If the kind is unknown or the object has no name
    """
    kind = document.get("kind")
    object_class = MANIFEST_KINDS.get(kind)  # type: ignore[arg-type]
    if object_class is None:
        raise ManifestError(f"Unable to handle Kubernetes object of kind {kind!r} in {source}")

    metadata = document.get("metadata") or {}
    name = metadata.get("name")
    if not name:
        raise ManifestError(f"{kind} in {source} has no metadata.name")

    return object_class(name=name, namespace=metadata.get("namespace") or "")


def parse_manifest(path: Union[str, Path]) -> List[ManifestObject]:
    """
    Parse every object in a (possibly multi-document) manifest file.

    Raises:
        ManifestError: If the file cannot be read or parsed, or holds an unknown kind
    """
    path = Path(path)
    try:
        with open(path, "r") as f:
            documents = list(yaml.safe_load_all(f))
    except OSError as e:
        raise ManifestError(f"Could not read manifest {path}: {e}")
    except yaml.YAMLError as e:
        raise ManifestError(f"Could not parse manifest {path}: {e}")

    objects = []
    for document in documents:
        if not document:
            continue
        if not isinstance(document, dict):
            raise ManifestError(f"{path} contains something that is not a Kubernetes object")
        objects.append(manifest_object(document, str(path)))
    return objects
