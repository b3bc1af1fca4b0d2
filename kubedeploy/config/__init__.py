"""Configuration loading and context resolution for kube-deploy."""

from kubedeploy.config.settings import (
    DeployContext,
    RepoConfig,
    ResolvedContext,
    RunOptions,
    ToolSettings,
    build_context,
    resolve_context,
)

__all__ = [
    "DeployContext",
    "RepoConfig",
    "ResolvedContext",
    "RunOptions",
    "ToolSettings",
    "build_context",
    "resolve_context",
]
