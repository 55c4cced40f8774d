"""Top-level coordination of one devrun session.

Resolves a preset, starts dependencies one after another, starts the primary
services concurrently, and tears everything down exactly once: when the last
primary service exits, on SIGINT/SIGTERM, or after a startup failure.
"""

from __future__ import annotations

import asyncio
import functools
import signal
from typing import Optional

from .args import ExtraArgs
from .config import DevConfig
from .errors import DevrunError
from .logging import bind_preset, get_logger, unbind_preset
from .process_manager import ProcessManager
from .resolver import ExecutionPlan, ResolvedEntry, resolve
from .services import ComposeRegistry, Service, ServiceContext, create_service
from .settings import DevrunSettings

logger = get_logger(__name__)

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class Orchestrator:
    """Owns the process manager, the compose registry and all service instances.

    Handles:
    - Dependency-first startup
    - Shutdown when all primary services are gone
    - Signal-triggered shutdown
    - Best-effort cleanup that runs at most once
    """

    def __init__(
        self,
        config: DevConfig,
        settings: Optional[DevrunSettings] = None,
        process_manager: Optional[ProcessManager] = None,
        extra_args: Optional[ExtraArgs] = None,
    ) -> None:
        self.config = config
        self.settings = settings or DevrunSettings()
        self.process_manager = process_manager or ProcessManager(grace_period=self.settings.grace_period)
        self.compose_registry = ComposeRegistry(self.settings.compose_command)
        self.context = ServiceContext(
            process_manager=self.process_manager,
            compose_registry=self.compose_registry,
            settings=self.settings,
            extra_args=extra_args or ExtraArgs(),
        )

        self.active_services: dict[str, Service] = {}
        self._active_primaries: set[str] = set()
        self._cleanup_started = False
        self._finished = asyncio.Event()
        self._cleanup_task: Optional[asyncio.Task] = None
        self._starting: Optional[asyncio.Future] = None
        self._installed_signals: list[signal.Signals] = []

    @property
    def cleanup_started(self) -> bool:
        return self._cleanup_started

    @property
    def finished(self) -> bool:
        return self._finished.is_set()

    async def start(self, preset_name: str) -> ExecutionPlan:
        """Resolve a preset and start its services.

        Dependencies start one at a time in plan order; primaries start
        concurrently. Returns once every start() call has completed, or early
        when shutdown begins during startup.

        Raises:
            DevrunError: Resolution or startup failure.
        """
        plan = resolve(self.config, preset_name)
        self._log_plan(plan)

        logger.info("Starting dependencies", count=len(plan.dependencies))
        for entry in plan.dependencies:
            if self._startup_interrupted():
                return plan
            service = self._instantiate(entry)
            if service is not None:
                await self._start_step([service])

        if self._startup_interrupted():
            return plan

        logger.info("Starting primary services", count=len(plan.primaries))
        primaries = []
        for entry in plan.primaries:
            service = self._instantiate(entry, on_exit=functools.partial(self._primary_exited, entry.name))
            if service is not None:
                self._active_primaries.add(entry.name)
                primaries.append(service)
        await self._start_step(primaries)

        logger.info("All services initiated. Press Ctrl+C to stop.")
        return plan

    def _startup_interrupted(self) -> bool:
        if self._cleanup_started:
            logger.info("Shutdown requested, not starting remaining services")
        return self._cleanup_started

    async def _start_step(self, services: list[Service]) -> None:
        """Start services concurrently; cleanup waits for a step in progress."""
        self._starting = asyncio.gather(*(service.start() for service in services), return_exceptions=True)
        try:
            results = await self._starting
        finally:
            self._starting = None
        for result in results:
            if isinstance(result, BaseException):
                raise result

    def _instantiate(self, entry: ResolvedEntry, on_exit=None) -> Optional[Service]:
        if entry.name in self.active_services:
            logger.info("Already active, skipping start", service=entry.label)
            return None
        service = create_service(entry, self.context, on_exit)
        self.active_services[entry.name] = service
        return service

    @staticmethod
    def _log_plan(plan: ExecutionPlan) -> None:
        logger.info("Starting development environment", preset=plan.preset)
        for entry in plan.dependencies:
            logger.info("Resolved dependency", service=entry.name, mode=entry.mode)
        for entry in plan.primaries:
            logger.info("Resolved primary service", service=entry.name, mode=entry.mode)

    def _primary_exited(self, name: str) -> None:
        self._active_primaries.discard(name)
        if self._active_primaries:
            return
        logger.info("All primary services exited")
        self.request_shutdown()

    def request_shutdown(self) -> None:
        """Schedule cleanup from synchronous code (callbacks, signal handlers)."""
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.get_running_loop().create_task(self.cleanup())

    async def cleanup(self) -> None:
        """Stop services, tear down containers, kill leftover processes.

        Runs at most once. Individual failures are logged and cleanup carries on.
        """
        if self._cleanup_started:
            logger.info("Cleanup already in progress")
            return
        self._cleanup_started = True
        self.context.stopping.set()

        # Services mid-start may still register containers; let them land first
        starting = self._starting
        if starting is not None and not starting.done():
            logger.info("Waiting for services that are still starting")
            await asyncio.wait([starting])

        logger.info("Initiating graceful cleanup")
        for service in reversed(list(self.active_services.values())):
            try:
                logger.info("Requesting service stop", service=service.label)
                await service.stop()
            except Exception as e:
                logger.error("Error stopping service", service=service.label, error=str(e))

        try:
            await self.compose_registry.teardown(self.process_manager)
        except Exception as e:
            logger.error("Error stopping container services", error=str(e))

        try:
            await self.process_manager.cleanup_managed_processes()
        except Exception as e:
            logger.error("Error cleaning up managed processes", error=str(e))

        logger.info("Cleanup complete")
        self._finished.set()

    def _on_signal(self, sig: int) -> None:
        logger.info("Received signal", signal=signal.Signals(sig).name)
        self.request_shutdown()

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in SHUTDOWN_SIGNALS:
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
            except (NotImplementedError, RuntimeError):
                # No loop signal support (Windows): hop onto the loop from the handler
                signal.signal(sig, lambda s, _frame: loop.call_soon_threadsafe(self._on_signal, s))
            self._installed_signals.append(sig)

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in self._installed_signals:
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError):
                signal.signal(sig, signal.SIG_DFL)
        self._installed_signals.clear()

    async def run(self, preset_name: str) -> int:
        """Run a preset until shutdown.

        Returns:
            Process exit code: 0 after a clean shutdown (including one that
            interrupted startup), 1 if startup failed.
        """
        bind_preset(preset_name)
        self._install_signal_handlers()
        try:
            try:
                await self.start(preset_name)
            except DevrunError as e:
                if not self._cleanup_started:
                    logger.error("Orchestrator failed to start", error=str(e))
                    return await self._abort()
                logger.info("Startup interrupted by shutdown", error=str(e))
            except Exception:
                if not self._cleanup_started:
                    logger.exception("Orchestrator failed to start")
                    return await self._abort()
                logger.info("Startup interrupted by shutdown", exc_info=True)

            await self._finished.wait()
            return 0
        finally:
            self._remove_signal_handlers()
            unbind_preset()

    async def _abort(self) -> int:
        await self.cleanup()
        await self._finished.wait()
        return 1
