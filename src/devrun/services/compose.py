"""Bookkeeping for compose services started during a session.

Container services never stop their containers themselves. Each records the
compose services that its ``up`` brought to life, including peers started
through compose-level ``depends_on``, and a single teardown at shutdown stops
exactly those, once per compose file.
"""

from __future__ import annotations

from typing import Optional, Sequence

from ..errors import CommandFailed
from ..logging import get_logger
from ..process_manager import ProcessManager

logger = get_logger(__name__)


class ComposeRegistry:
    """Compose services to stop at shutdown, keyed by compose file."""

    def __init__(self, compose_command: Sequence[str] = ("docker", "compose")) -> None:
        self.compose_command = list(compose_command)
        self._services: dict[str, list[str]] = {}

    def compose_args(self, compose_file: str, *args: str) -> tuple[str, list[str]]:
        """Command and arguments for a compose invocation on one file."""
        return self.compose_command[0], [*self.compose_command[1:], "-f", compose_file, *args]

    def services_for(self, compose_file: str) -> list[str]:
        return list(self._services.get(compose_file, []))

    def compose_files(self) -> list[str]:
        return list(self._services)

    def __len__(self) -> int:
        return sum(len(services) for services in self._services.values())

    def record(
        self,
        compose_file: str,
        target: str,
        before: Optional[Sequence[str]],
        after: Optional[Sequence[str]],
    ) -> list[str]:
        """Register the services an ``up`` of target started.

        Services running before the ``up`` were not started by us and are left
        alone. If either listing failed only the target itself is recorded.

        Returns:
            Newly registered service names.
        """
        known = self._services.setdefault(compose_file, [])
        if before is None or after is None:
            candidates = [target]
        else:
            candidates = [service for service in after if service not in before]

        new = [service for service in candidates if service not in known]
        known.extend(new)
        return new

    async def teardown(self, process_manager: ProcessManager) -> None:
        """Stop every recorded service. Failures are logged, never raised."""
        if not len(self):
            logger.info("No container services were started, skipping global stop")
            self._services.clear()
            return

        logger.info("Stopping container services from used compose files")
        for compose_file, services in self._services.items():
            if not services:
                continue
            logger.info("Stopping compose services", compose_file=compose_file, services=services)
            command, args = self.compose_args(compose_file, "stop", *services)
            try:
                await process_manager.run_inherited(command, args)
            except CommandFailed as e:
                logger.error("Failed to stop compose services", compose_file=compose_file, error=str(e))

        self._services.clear()
