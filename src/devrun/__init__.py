"""devrun - local development environment orchestrator.

Starts the services of a preset in dependency order, multiplexes their
colored output under per-service prefixes, and tears everything down on exit.
"""

__version__ = "0.1.0"

# Configuration
from .config import DevConfig, load_config
from .settings import DevrunSettings

# Errors
from .errors import (
    CommandFailed,
    ConfigError,
    CyclicDependency,
    DevrunError,
    HealthCheckError,
    HealthCheckTimeout,
    ModeNotFound,
    PresetNotFound,
    ServiceNotFound,
    UnknownServiceType,
)

# Resolution
from .resolver import ExecutionPlan, ResolvedEntry, Role, resolve

# Output formatting
from .formatting import FormattingState, StreamState, format_chunk

# Processes and services
from .process_manager import ProcessHandle, ProcessManager
from .services import CommandService, ComposeRegistry, ContainerService, Service

# Orchestration
from .orchestrator import Orchestrator

__all__ = [
    # Config
    "DevConfig",
    "DevrunSettings",
    "load_config",
    # Errors
    "DevrunError",
    "ConfigError",
    "PresetNotFound",
    "ServiceNotFound",
    "ModeNotFound",
    "CyclicDependency",
    "UnknownServiceType",
    "CommandFailed",
    "HealthCheckError",
    "HealthCheckTimeout",
    # Resolution
    "ExecutionPlan",
    "ResolvedEntry",
    "Role",
    "resolve",
    # Formatting
    "FormattingState",
    "StreamState",
    "format_chunk",
    # Processes and services
    "ProcessHandle",
    "ProcessManager",
    "Service",
    "CommandService",
    "ContainerService",
    "ComposeRegistry",
    # Orchestration
    "Orchestrator",
]
