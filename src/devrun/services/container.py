"""Services backed by a compose-managed container."""

from __future__ import annotations

import asyncio
from typing import Callable, Optional

from ..config import ContainerServiceConfig
from ..errors import CommandFailed, HealthCheckError, HealthCheckTimeout
from ..logging import get_logger
from ..resolver import ResolvedEntry
from .base import Service, ServiceContext

logger = get_logger(__name__)

# Containers without a healthcheck report "none"
HEALTHY_STATES = ("healthy", "none")
PENDING_STATES = ("starting", "unhealthy")

STATUS_FORMAT = "{{.State.Status}}"
HEALTH_FORMAT = "{{if .State.Health}}{{.State.Health.Status}}{{else}}none{{end}}"


class ContainerService(Service):
    """Brings up one compose service and optionally waits for it to be healthy.

    Starting is idempotent: a container that is already running is left as is
    and not registered for teardown. stop() does nothing; containers are
    stopped once for the whole session by ComposeRegistry.teardown().
    """

    config: ContainerServiceConfig

    def __init__(
        self,
        entry: ResolvedEntry,
        context: ServiceContext,
        on_exit: Optional[Callable[[], None]] = None,
    ) -> None:
        super().__init__(entry, context, on_exit)
        self.compose_service = self.config.service
        self.compose_file = self.config.compose_file
        self.container_id: Optional[str] = None

    @property
    def registry(self):
        return self.context.compose_registry

    async def start(self) -> None:
        logger.info(
            "Starting docker service",
            service=self.label,
            compose_service=self.compose_service,
            compose_file=self.compose_file,
        )

        status = await self._get_container_status()
        if status == "running":
            logger.info("Docker container is already running", service=self.label, compose_service=self.compose_service)
        else:
            await self._bring_up()

        if self.config.health_check:
            await self.wait_until_healthy()
        else:
            logger.info("Skipping health check", service=self.label, compose_service=self.compose_service)

    async def _bring_up(self) -> None:
        logger.info("Bringing up docker service", service=self.label, compose_service=self.compose_service)
        before = await self._get_running_services()

        command, args = self.registry.compose_args(self.compose_file, "up", self.compose_service, "-d")
        try:
            await self.process_manager.run_inherited(command, args)
        except CommandFailed as e:
            raise e.with_context(self.label) from e

        # up may have recreated the container
        self.container_id = None
        after = await self._get_running_services()
        started = self.registry.record(self.compose_file, self.compose_service, before, after)
        logger.info("Docker service brought up", service=self.label, compose_service=self.compose_service)

        peers = [service for service in started if service != self.compose_service]
        if peers:
            logger.info("Dependency services started by compose", service=self.label, peers=peers)

    async def stop(self) -> None:
        logger.info(
            "Relying on global compose teardown",
            service=self.label,
            compose_service=self.compose_service,
        )
        self.container_id = None

    async def check_health(self) -> bool:
        container_id = await self._get_container_id()
        if not container_id:
            return False
        try:
            return await self._get_health_status(container_id) in HEALTHY_STATES
        except CommandFailed:
            return False

    async def wait_until_healthy(self) -> None:
        """Poll the container health until healthy.

        Raises:
            HealthCheckError: Container missing, inspect failing, an
                unexpected health state, or session shutdown while waiting.
            HealthCheckTimeout: Still not healthy after all attempts.
        """
        settings = self.context.settings
        container_id = await self._get_container_id()
        if not container_id:
            raise HealthCheckError(
                f"[{self.label}] Cannot check health: container for '{self.compose_service}' not found."
            )

        logger.info("Checking healthiness", service=self.label, container=container_id)
        stopping = self.context.stopping
        for attempt in range(1, settings.health_check_attempts + 1):
            if attempt > 1:
                try:
                    await asyncio.wait_for(stopping.wait(), settings.health_check_delay)
                except asyncio.TimeoutError:
                    pass
            if stopping.is_set():
                raise HealthCheckError(
                    f"[{self.label}] Shutdown requested while waiting for '{container_id}' to become healthy."
                )

            try:
                health = await self._get_health_status(container_id)
            except CommandFailed as e:
                raise HealthCheckError(
                    f"[{self.label}] Failed to check health for '{container_id}': {e}"
                ) from e

            if health in HEALTHY_STATES:
                logger.info("Container healthy", service=self.label, container=container_id, attempts=attempt)
                return
            if health in PENDING_STATES:
                continue

            raise HealthCheckError(
                f"[{self.label}] Container '{container_id}' is in unexpected health state: {health!r}"
            )

        raise HealthCheckTimeout(self.compose_service, settings.health_check_attempts, context=self.label)

    async def _get_running_services(self) -> Optional[list[str]]:
        command, args = self.registry.compose_args(self.compose_file, "ps", "--services")
        try:
            output = await self.process_manager.run_captured(command, args)
        except CommandFailed as e:
            logger.warning("Could not list running compose services", service=self.label, error=str(e))
            return None
        return [line.strip() for line in output.splitlines() if line.strip()]

    async def _get_container_id(self) -> Optional[str]:
        if self.container_id:
            return self.container_id

        command, args = self.registry.compose_args(self.compose_file, "ps", "-a", "-q", self.compose_service)
        try:
            output = await self.process_manager.run_captured(command, args)
        except CommandFailed:
            return None

        lines = output.split()
        if lines:
            self.container_id = lines[0]
        return self.container_id

    async def _get_container_status(self) -> Optional[str]:
        container_id = await self._get_container_id()
        if not container_id:
            return None
        try:
            return await self._inspect(container_id, STATUS_FORMAT)
        except CommandFailed:
            return None

    async def _get_health_status(self, container_id: str) -> str:
        return await self._inspect(container_id, HEALTH_FORMAT)

    async def _inspect(self, container_id: str, template: str) -> str:
        return await self.process_manager.run_captured(
            self.context.settings.container_command,
            ["container", "inspect", "-f", template, container_id],
        )
