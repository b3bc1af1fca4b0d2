"""
Operator hold points.

A hold blocks until the operator answers. It never proceeds or bails out on
its own; the minimum wait only decides whether a fast "yes" gets a second,
sterner question.
"""

import logging
import time
from datetime import datetime
from typing import Callable, Optional

from kubedeploy.audit import audit_rollout_action
from kubedeploy.protocols import Confirm

logger = logging.getLogger(__name__)


def console_confirm(prompt: str) -> bool:
    """
    Ask the operator on the terminal.

    Returns:
        True only for an explicit 'y'/'yes'; Ctrl-C and end of input count as no
    """
    full_prompt = f"{prompt}\n=> Press 'y' to proceed, anything else to bail out.\n>>> "

    try:
        response = input(full_prompt).strip().lower()
    except (KeyboardInterrupt, EOFError):
        print("\nCancelled.")
        return False

    return response in ("y", "yes")


class HoldSupervisor:
    """Pauses a rollout until the operator explicitly confirms."""

    TOO_QUICK_PROMPT = "=> Bad behaviour - you're back too quickly. Honestly, are you really sure?"

    def __init__(
        self,
        confirm: Confirm = console_confirm,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize the supervisor.

        Args:
            confirm: Yes/no question asked to the operator
            clock: Seconds source used to measure how long the operator took
        """
        self.confirm = confirm
        self.clock = clock

    def hold(
        self,
        label: str,
        minimum_seconds: int,
        skip: bool = False,
        release: Optional[str] = None,
    ) -> bool:
        """
        Hold until the operator decides.

        Args:
            label: Name of the hold point
            minimum_seconds: Shortest plausible time to watch the monitors
            skip: Proceed immediately without asking (--no-canary / --force)
            release: Release the hold belongs to, for the audit log

        Returns:
            True to proceed, False to bail out
        """
        if skip:
            logger.info(f"=> Skipping hold at {label}, like you asked.")
            return True

        started = self.clock()
        stamp = datetime.now().strftime("%b %d %H:%M:%S")
        proceed = self.confirm(f"{stamp}: You are at a canary point ({label}).")
        elapsed = self.clock() - started

        if not proceed:
            audit_rollout_action(
                "hold_rejected",
                release,
                {"hold": label, "elapsed_seconds": round(elapsed, 1)},
            )
            return False

        if elapsed < minimum_seconds:
            logger.warning(
                f"=> Confirmed {label} after {int(elapsed)}s, "
                f"but you should watch for at least {minimum_seconds}s."
            )
            proceed = self.confirm(self.TOO_QUICK_PROMPT)
            audit_rollout_action(
                "hold_confirmed" if proceed else "hold_rejected",
                release,
                {
                    "hold": label,
                    "elapsed_seconds": round(elapsed, 1),
                    "minimum_seconds": minimum_seconds,
                    "reconfirmed": True,
                },
            )
            return proceed

        audit_rollout_action(
            "hold_confirmed",
            release,
            {"hold": label, "elapsed_seconds": round(elapsed, 1)},
        )
        return True
