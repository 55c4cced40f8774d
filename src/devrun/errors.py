"""Exceptions raised by devrun.

Everything derives from DevrunError so the CLI can report any failure of the
resolve/start sequence with a single handler.
"""

from __future__ import annotations

from typing import Optional, Sequence


class DevrunError(Exception):
    """Base exception for all devrun errors."""

    pass


class ConfigError(DevrunError):
    """Raised when the config file is missing, unreadable or invalid."""

    pass


class PresetNotFound(DevrunError):
    """Raised when the requested preset is not defined."""

    def __init__(self, preset: str):
        self.preset = preset
        super().__init__(f"Preset '{preset}' not found in configuration.")


class ServiceNotFound(DevrunError):
    """Raised when a preset or dependency names an undefined service."""

    def __init__(self, service: str, required_by: Optional[str] = None):
        self.service = service
        self.required_by = required_by

        message = f"Service named '{service}' not found in configuration."
        if required_by:
            message = f"{message} (required by '{required_by}')"

        super().__init__(message)


class ModeNotFound(DevrunError):
    """Raised when a service has no configuration for the resolved mode."""

    def __init__(self, service: str, mode: str):
        self.service = service
        self.mode = mode
        super().__init__(f"Mode named '{mode}' not found in service '{service}'.")


class CyclicDependency(DevrunError):
    """Raised when service dependencies form a cycle."""

    def __init__(self, cycle: Sequence[str]):
        self.cycle = list(cycle)
        super().__init__(f"Cyclic dependency detected: {' -> '.join(self.cycle)}")


class UnknownServiceType(DevrunError):
    """Raised when no service implementation exists for a config type tag."""

    def __init__(self, service_type: str, service: str):
        self.service_type = service_type
        self.service = service
        super().__init__(f"Unknown service type '{service_type}' for service '{service}'.")


class CommandFailed(DevrunError):
    """Raised when a command exits non-zero or cannot be spawned.

    exit_code is None when the process never started.
    """

    def __init__(
        self,
        command: str,
        exit_code: Optional[int],
        stderr: str = "",
        context: Optional[str] = None,
    ):
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr
        self.context = context

        if exit_code is None:
            message = f"Failed to spawn '{command}'"
        else:
            message = f"Command failed with code {exit_code}: {command}"
        if context:
            message = f"[{context}] {message}"
        if stderr:
            message = f"{message}\n{stderr}"

        super().__init__(message)

    def with_context(self, context: str) -> CommandFailed:
        """Return a copy of this error tagged with the originating service."""
        return CommandFailed(self.command, self.exit_code, self.stderr, context)


class HealthCheckError(DevrunError):
    """Raised when a container reports an unexpected health state."""

    pass


class HealthCheckTimeout(HealthCheckError):
    """Raised when a container never reports healthy within the polling budget."""

    def __init__(self, service: str, attempts: int, context: Optional[str] = None):
        self.service = service
        self.attempts = attempts
        self.context = context

        message = f"Service '{service}' wasn't healthy in time after {attempts} attempts."
        if context:
            message = f"[{context}] {message}"

        super().__init__(message)
