"""Kubernetes access: the Deployment gateway and manifest objects."""

from kubedeploy.kube.gateway import KubeGateway
from kubedeploy.kube.manifests import ManifestObject, parse_manifest

__all__ = ["KubeGateway", "ManifestObject", "parse_manifest"]
