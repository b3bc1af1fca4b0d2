"""
Release naming.

Pure functions deriving image tags and release names from a build's identity.
"""

import re

# Docker tags and Kubernetes names both reject anything outside this set
_INVALID_BRANCH_CHARS = re.compile(r"[^A-Za-z0-9_.\-]")

APP_NAME_MAX = 25
BRANCH_MAX = 25


def sanitize_branch(branch: str) -> str:
    """Replace every character outside [A-Za-z0-9_.-] with '-'."""
    return _INVALID_BRANCH_CHARS.sub("-", branch.strip())


def image_tag(version: str, branch: str, revision: str) -> str:
    """
    Build the image tag for a build.

    Args:
        version: Application version
        branch: Git branch (sanitized here)
        revision: Short source revision

    Returns:
        Tag of the form <version>-<branch[:25]>-<revision>
    """
    return f"{version}-{sanitize_branch(branch)[:BRANCH_MAX]}-{revision}"


def release_name(app_name: str, version: str, branch: str, revision: str) -> str:
    """
    Build the deterministic release name for a build.

    Identical inputs always yield the identical name, so re-running a rollout
    for an unchanged build targets the same Deployment.

    Args:
        app_name: Application name (first 25 characters used)
        version: Application version
        branch: Git branch
        revision: Short source revision

    Returns:
        Release name of the form <app[:25]>-<version>-<branch[:25]>-<revision>
    """
    return f"{app_name[:APP_NAME_MAX]}-{image_tag(version, branch, revision)}"


def app_label(app_name: str, branch: str) -> str:
    """Value of the 'app' label grouping every release of one app and branch."""
    return f"{app_name}-{sanitize_branch(branch)}"
