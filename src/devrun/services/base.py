"""Service interface shared by command and container services."""

from __future__ import annotations

import abc
import asyncio
from dataclasses import dataclass, field
from typing import Callable, Optional

from ..args import ExtraArgs
from ..process_manager import ProcessManager
from ..resolver import ResolvedEntry, Role
from ..settings import DevrunSettings
from .compose import ComposeRegistry


@dataclass
class ServiceContext:
    """Collaborators shared by every service of one orchestrator run."""

    process_manager: ProcessManager
    compose_registry: ComposeRegistry
    settings: DevrunSettings = field(default_factory=DevrunSettings)
    extra_args: ExtraArgs = field(default_factory=ExtraArgs)
    # Set once session cleanup begins; long waits during start() give up on it
    stopping: asyncio.Event = field(default_factory=asyncio.Event)


class Service(abc.ABC):
    """A resolved service entry that can be started and stopped."""

    def __init__(
        self,
        entry: ResolvedEntry,
        context: ServiceContext,
        on_exit: Optional[Callable[[], None]] = None,
    ) -> None:
        self.name = entry.name
        self.mode = entry.mode
        self.config = entry.config
        self.role = entry.role
        self.context = context
        self.on_exit = on_exit

    @property
    def label(self) -> str:
        return f"{self.name}:{self.mode}"

    @property
    def is_primary(self) -> bool:
        return self.role is Role.PRIMARY

    @property
    def process_manager(self) -> ProcessManager:
        return self.context.process_manager

    @abc.abstractmethod
    async def start(self) -> None:
        """Start the service. Returns once it is up (and healthy, if checked)."""
        pass

    async def stop(self) -> None:
        """Stop whatever this instance started."""
        return None

    async def check_health(self) -> bool:
        """Report whether the service is currently healthy."""
        return True
