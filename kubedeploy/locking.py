"""
Advisory rollout lock.

One lock file per application, created atomically and held for the whole
rollout, including the time spent waiting on the operator at hold points.
A second rollout of the same application fails fast instead of queueing.
"""

import json
import logging
import os
import re
import socket
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Union

from kubedeploy.audit import audit_rollout_action
from kubedeploy.protocols import LockHeldError

logger = logging.getLogger(__name__)

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9_.\-]")


class ReleaseLock:
    """Lock file guarding rollouts of one application."""

    def __init__(self, app_identity: str, lock_dir: Union[str, Path]) -> None:
        """
        Initialize the lock.

        Args:
            app_identity: Application the lock is scoped to
            lock_dir: Directory holding lock files
        """
        self.app_identity = app_identity
        safe_name = _UNSAFE_FILENAME_CHARS.sub("-", app_identity)
        self.path = Path(lock_dir) / f"kube-deploy-{safe_name}.lock"
        self.acquired = False

    def _holder_info(self) -> Dict[str, Any]:
        return {
            "app": self.app_identity,
            "pid": os.getpid(),
            "host": socket.gethostname(),
            "acquired_at": datetime.now(timezone.utc).isoformat(),
        }

    def read_holder(self) -> Optional[Dict[str, Any]]:
        """Return whatever the current holder wrote into the lock file."""
        try:
            data = json.loads(self.path.read_text())
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError):
            return {}
        return data if isinstance(data, dict) else {}

    def acquire(self, force: bool = False) -> None:
        """
        Take the lock.

        Args:
            force: Take the lock even if another rollout holds it. This only
                skips the check; it does not make concurrent rollouts safe.

        Raises:
            LockHeldError: If the lock is held and force is False
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        info = self._holder_info()

        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            holder = self.read_holder() or {}
            if not force:
                raise LockHeldError(
                    f"A rollout of {self.app_identity} is already in progress "
                    f"(lock {self.path}, held by pid {holder.get('pid', '?')} on "
                    f"{holder.get('host', '?')} since {holder.get('acquired_at', '?')}).\n"
                    "If you are sure nothing else is deploying, re-run with --force."
                )
            logger.warning(
                f"=> Overriding the rollout lock for {self.app_identity}, like you asked. "
                "Make sure no other rollout is running!"
            )
            audit_rollout_action(
                "lock_overridden", details={"app": self.app_identity, "previous_holder": holder}
            )
            self.path.write_text(json.dumps(info))
            self.acquired = True
            return

        with os.fdopen(fd, "w") as f:
            json.dump(info, f)
        self.acquired = True
        logger.debug(f"Acquired rollout lock {self.path}")

    def release(self) -> None:
        """Drop the lock if this process holds it."""
        if not self.acquired:
            return
        try:
            self.path.unlink()
            logger.debug(f"Released rollout lock {self.path}")
        except FileNotFoundError:
            logger.warning(f"Rollout lock {self.path} was already removed")
        self.acquired = False

    @contextmanager
    def held(self, force: bool = False) -> Iterator["ReleaseLock"]:
        """Hold the lock for the duration of a with-block, whatever happens inside."""
        self.acquire(force)
        try:
            yield self
        finally:
            self.release()
