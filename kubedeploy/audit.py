"""
Audit logging for rollout actions.

Tracks human decisions at hold points, lock overrides, bailouts and
rollbacks so they can be reviewed after the fact.
"""

import getpass
import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_AUDIT_LOG_PATH = Path.home() / ".local" / "log" / "kube-deploy" / "audit.jsonl"


def _audit_log_path() -> Path:
    override = os.environ.get("KUBEDEPLOY_AUDIT_LOG")
    return Path(override) if override else DEFAULT_AUDIT_LOG_PATH


def _current_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "unknown"


def audit_rollout_action(
    action: str,
    release: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    user: Optional[str] = None,
    success: Optional[bool] = None,
) -> None:
    """
    Log a rollout action for audit purposes.

    Args:
        action: Action taken (hold_confirmed, hold_rejected, bailout, promoted, ...)
        release: Release name
        details: Additional details about the action
        user: User who performed the action (defaults to the login user)
        success: Whether the action succeeded, if that applies
    """
    audit_path = _audit_log_path()
    try:
        audit_path.parent.mkdir(parents=True, exist_ok=True)

        audit_entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "action": action,
            "release": release,
            "user": user or _current_user(),
            "details": details or {},
        }

        if success is not None:
            audit_entry["success"] = success

        # Append to audit log (JSONL format)
        with open(audit_path, "a") as f:
            f.write(json.dumps(audit_entry, default=str) + "\n")

        logger.debug(f"Audit: {action} {release} by {audit_entry['user']}")

    except OSError as e:
        # Don't fail rollouts due to audit logging issues
        logger.error(f"Failed to write audit log {audit_path}: {e}")
