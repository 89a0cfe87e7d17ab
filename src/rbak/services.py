"""Stop and start system services around the copy window."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from rbak.executor import Executor
from rbak.models import ServiceReport

__all__ = ["ServiceController"]

logger = logging.getLogger(__name__)


class ServiceController:
    """Drives systemctl in batches.

    A failing batch never raises: cleanup must still be able to start every
    service, whatever happened while stopping them.
    """

    def __init__(self, executor: Executor, systemctl: str = "systemctl") -> None:
        self._executor = executor
        self._systemctl = systemctl

    async def stop(self, names: Sequence[str]) -> ServiceReport:
        """Stop services in the given order."""
        return await self._batch("stop", list(names))

    async def start(self, names: Sequence[str]) -> ServiceReport:
        """Start services in reverse of the given order."""
        return await self._batch("start", list(reversed(names)))

    async def _batch(self, action: str, names: list[str]) -> ServiceReport:
        if not names:
            return ServiceReport(action=action, success=True)

        result = await self._executor.run_command([self._systemctl, action, *names])
        error_message = None
        if not result.success:
            error_message = result.stderr.strip() or f"systemctl {action} exited with {result.exit_code}"
            if action == "stop":
                logger.warning("Service stop failed (continuing): %s", error_message)
            else:
                logger.error("Service start failed: %s", error_message)

        states = await self.states(names)
        for name, state in states.items():
            logger.info("%s: %s", name, state)
        return ServiceReport(
            action=action,
            success=result.success,
            states=states,
            error_message=error_message,
        )

    async def states(self, names: Sequence[str]) -> dict[str, str]:
        """Query ``systemctl is-active`` for each service."""
        states: dict[str, str] = {}
        for name in names:
            result = await self._executor.run_command([self._systemctl, "is-active", name])
            states[name] = result.stdout.strip() or "unknown"
        return states
