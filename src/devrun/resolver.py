"""Preset resolution into an ordered startup plan.

A preset names the services the user wants (primaries). Their declared
dependencies are expanded depth-first, so every dependency is listed after
the dependencies it needs itself, and siblings keep their declaration order.
The resulting plan starts all dependencies, in order, before any primary.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from .config import ConcreteServiceConfig, DevConfig, HybridServiceConfig
from .errors import CyclicDependency, ModeNotFound, PresetNotFound, ServiceNotFound
from .logging import get_logger

logger = get_logger(__name__)

DEFAULT_MODE = "dev"


class Role(str, Enum):
    """Why a service is part of the plan."""

    PRIMARY = "primary"
    DEPENDENCY = "dependency"


@dataclass(frozen=True)
class ResolvedEntry:
    """A service in a concrete mode, ready to be instantiated."""

    name: str
    mode: str
    config: ConcreteServiceConfig
    role: Role

    @property
    def label(self) -> str:
        return f"{self.name}:{self.mode}"


@dataclass
class ExecutionPlan:
    """Resolved startup order for a preset."""

    preset: str
    dependencies: list[ResolvedEntry] = field(default_factory=list)
    primaries: list[ResolvedEntry] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def entries(self) -> list[ResolvedEntry]:
        """All entries in start order."""
        return self.dependencies + self.primaries

    def find(self, name: str) -> Optional[ResolvedEntry]:
        for entry in self.entries:
            if entry.name == name:
                return entry
        return None


def resolve_mode(config: DevConfig, name: str, mode: Optional[str]) -> tuple[str, ConcreteServiceConfig]:
    """Resolve the concrete mode and configuration of a service.

    Hybrid services use the requested mode, then their default mode, then
    "dev". Other services only have the "dev" mode.

    Raises:
        ServiceNotFound: Unknown service name.
        ModeNotFound: The service has no configuration for the mode.
    """
    service = config.services.get(name)
    if service is None:
        raise ServiceNotFound(name)

    if isinstance(service, HybridServiceConfig):
        mode = mode or service.default_mode or DEFAULT_MODE
        concrete = service.modes.get(mode)
    else:
        mode = mode or DEFAULT_MODE
        concrete = service if mode == DEFAULT_MODE else None

    if concrete is None:
        raise ModeNotFound(name, mode)
    return mode, concrete


class _Resolver:
    def __init__(self, config: DevConfig, preset: str):
        self.config = config
        self.plan = ExecutionPlan(preset=preset)
        self._expanding: list[str] = []

    def _warn(self, message: str) -> None:
        logger.warning(message)
        self.plan.warnings.append(message)

    def _registered(self, name: str) -> Optional[ResolvedEntry]:
        return self.plan.find(name)

    def add_primary(self, name: str, mode: Optional[str]) -> None:
        if name not in self.config.services:
            raise ServiceNotFound(name)

        for entry in self.plan.primaries:
            if entry.name == name:
                self._warn(f"Ignoring duplicate service '{name}' in preset '{self.plan.preset}'.")
                return

        for index, entry in enumerate(self.plan.dependencies):
            if entry.name == name:
                self._warn(
                    f"Removing service '{name}' from dependencies because it is flagged "
                    f"to be run as service in mode '{entry.mode}'."
                )
                del self.plan.dependencies[index]
                break

        mode, concrete = resolve_mode(self.config, name, mode)
        self.plan.primaries.append(ResolvedEntry(name, mode, concrete, Role.PRIMARY))
        self._expand(name, concrete)

    def add_dependency(self, name: str, mode: str, owner: str) -> None:
        if name in self._expanding:
            cycle = self._expanding[self._expanding.index(name):] + [name]
            raise CyclicDependency(cycle)

        if name not in self.config.services:
            raise ServiceNotFound(name, required_by=owner)

        existing = self._registered(name)
        if existing is not None:
            if existing.role is Role.PRIMARY:
                self._warn(
                    f"Ignoring dependency '{name}' for '{owner}' because it is flagged "
                    f"to be run as service in mode '{existing.mode}'."
                )
            else:
                self._warn(
                    f"Skipping dependency '{name}' (mode '{mode}') for '{owner}' because it's "
                    f"already present in dependencies list in mode '{existing.mode}'."
                )
            return

        mode, concrete = resolve_mode(self.config, name, mode)
        self._expand(name, concrete)
        self.plan.dependencies.append(ResolvedEntry(name, mode, concrete, Role.DEPENDENCY))

    def _expand(self, name: str, concrete: ConcreteServiceConfig) -> None:
        self._expanding.append(name)
        try:
            for dependency in concrete.dependencies:
                self.add_dependency(dependency.service, dependency.mode, owner=name)
        finally:
            self._expanding.pop()


def resolve(config: DevConfig, preset_name: str) -> ExecutionPlan:
    """Expand a preset into dependencies and primaries.

    Raises:
        PresetNotFound: Unknown preset.
        ServiceNotFound: A preset entry or dependency names an unknown service.
        ModeNotFound: A service has no configuration for the requested mode.
        CyclicDependency: Dependencies loop back onto a service being expanded.
    """
    preset = config.presets.get(preset_name)
    if preset is None:
        raise PresetNotFound(preset_name)

    resolver = _Resolver(config, preset_name)
    for name in preset.services:
        resolver.add_primary(name, preset.modes.get(name))

    return resolver.plan
