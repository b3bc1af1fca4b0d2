"""
Helpers for running the external tools kube-deploy drives.

Locates kubectl once and wraps subprocess calls so callers only deal with
output strings and exit codes.
"""

import logging
import os
import shutil
import subprocess
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

# Cache the result to avoid repeated PATH lookups
_kubectl_command: Optional[List[str]] = None


class KubectlNotFoundError(RuntimeError):
    """Raised when kubectl is not available."""

    def __init__(self) -> None:
        super().__init__(
            "kubectl is not available on this system.\n"
            "\n"
            "Troubleshooting:\n"
            "  1. Check if kubectl is installed: kubectl version --client\n"
            "  2. Check that it is on your PATH, or set KUBECTL to its location\n"
        )


def reset_kubectl_command_cache() -> None:
    """
    Reset the cached kubectl command.

    Useful for testing or when the system configuration changes.
    """
    global _kubectl_command
    _kubectl_command = None


def get_kubectl_command() -> List[str]:
    """
    Get the kubectl command for this system.

    Returns:
        List of command parts, e.g. ["kubectl"] or ["/opt/bin/kubectl"]

    Raises:
        KubectlNotFoundError: If kubectl cannot be found
    """
    global _kubectl_command

    if _kubectl_command is not None:
        return _kubectl_command

    override = os.environ.get("KUBECTL")
    path = override if override else shutil.which("kubectl")
    if not path:
        raise KubectlNotFoundError()

    _kubectl_command = [path]
    logger.debug(f"Using kubectl at {path}")
    return _kubectl_command


def kubectl_cmd(*args: str) -> List[str]:
    """
    Build a kubectl command with the given arguments.

    Example:
        kubectl_cmd("apply", "-f", "/tmp/deployment.yaml")
        Returns: ["kubectl", "apply", "-f", "/tmp/deployment.yaml"]
    """
    return get_kubectl_command() + list(args)


def get_command_output(
    cmd: List[str], cwd: Optional[str] = None, env: Optional[Dict[str, str]] = None
) -> str:
    """
    Run a command and return its stdout.

    Raises:
        subprocess.CalledProcessError: If the command exits non-zero
    """
    logger.debug(f"Running: {' '.join(cmd)}")
    result = subprocess.run(
        cmd, cwd=cwd, env=env, capture_output=True, text=True, check=True
    )
    return result.stdout


def get_command_output_and_exit_code(
    cmd: List[str], cwd: Optional[str] = None, env: Optional[Dict[str, str]] = None
) -> tuple[str, int]:
    """Run a command and return (stdout, exit code) without raising."""
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        result = subprocess.run(cmd, cwd=cwd, env=env, capture_output=True, text=True)
    except FileNotFoundError as e:
        logger.error(f"Command not found: {cmd[0]}: {e}")
        return "", 127
    if result.returncode != 0 and result.stderr:
        logger.debug(result.stderr.strip())
    return result.stdout, result.returncode


def stream_command_exit_code(
    cmd: List[str], cwd: Optional[str] = None, env: Optional[Dict[str, str]] = None
) -> int:
    """Run a command with its output going straight to the terminal."""
    logger.info(f"=> Running: {' '.join(cmd)}")
    try:
        return subprocess.run(cmd, cwd=cwd, env=env).returncode
    except FileNotFoundError as e:
        logger.error(f"Command not found: {cmd[0]}: {e}")
        return 127
