"""Services made of local OS processes."""

from __future__ import annotations

import asyncio
from typing import Callable, Optional

from ..args import apply_extra_args
from ..config import CommandServiceConfig, CommandSpec
from ..errors import CommandFailed, DevrunError
from ..logging import get_logger
from ..process_manager import ProcessHandle
from ..resolver import ResolvedEntry
from .base import Service, ServiceContext

logger = get_logger(__name__)


class CommandService(Service):
    """Runs pre-commands, then one managed process per configured command.

    Output lines are prefixed with ``name:mode:`` (``name:mode:index:`` when the
    service has several commands). The exit callback fires once, after every
    process of the service has exited for good.
    """

    config: CommandServiceConfig

    def __init__(
        self,
        entry: ResolvedEntry,
        context: ServiceContext,
        on_exit: Optional[Callable[[], None]] = None,
    ) -> None:
        super().__init__(entry, context, on_exit)
        self.prefix = f"{self.name}:{self.mode}:"
        self.handles: list[ProcessHandle] = []
        self._remaining = 0

    async def start(self) -> None:
        logger.info("Starting cmd service", service=self.label)
        self._run_pre_commands()

        commands = self.config.commands
        use_index = len(commands) > 1
        self._remaining = len(commands)

        for index, spec in enumerate(commands):
            prefix = f"{self.prefix}{index}:" if use_index else self.prefix
            handle = await self._start_command(index, spec, prefix)
            self.handles.append(handle)
            logger.info("Process started", service=self.label, pid=self.process_manager.pid(handle))

    def _run_pre_commands(self) -> None:
        pre_commands = self.config.pre_commands
        if not pre_commands:
            return

        logger.info("Running pre-commands", service=self.label, count=len(pre_commands))
        for spec in pre_commands:
            try:
                self.process_manager.run_sync(
                    spec.command[0],
                    spec.command[1:],
                    cwd=self.config.directory_for(spec),
                    capture=False,
                )
            except CommandFailed as e:
                raise e.with_context(f"{self.label} pre-command") from e
        logger.info("Pre-commands completed", service=self.label)

    async def _start_command(self, index: int, spec: CommandSpec, prefix: str) -> ProcessHandle:
        extra = self.context.extra_args.for_command(self.name, index)
        argv = apply_extra_args(spec.command, extra)
        if not argv:
            raise DevrunError(f"[{self.label}] Command {index} is empty after argument substitution")

        try:
            handle = await self.process_manager.start_managed(
                argv[0],
                argv[1:],
                cwd=self.config.directory_for(spec),
                prefix=prefix,
                restart_on_error=spec.restart_on_error,
                on_exit=self._process_exited,
            )
        except CommandFailed as e:
            raise e.with_context(self.label) from e

        if handle is None:
            raise CommandFailed(" ".join(argv), None, "skipped during cleanup", context=self.label)
        return handle

    def _process_exited(self) -> None:
        self._remaining -= 1
        if self._remaining > 0:
            return
        logger.info("All processes exited", service=self.label)
        if self.on_exit is not None:
            self.on_exit()

    async def stop(self) -> None:
        handles, self.handles = self.handles, []
        for handle in handles:
            logger.info("Stopping process", service=self.label, pid=self.process_manager.pid(handle))
        await asyncio.gather(*(self.process_manager.kill_process(handle) for handle in handles))

    async def check_health(self) -> bool:
        return bool(self.handles) and all(self.process_manager.is_alive(handle) for handle in self.handles)
