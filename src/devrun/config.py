"""Declarative devrun configuration.

A config file describes services and presets:

    services:
      db:
        type: docker
        service: postgres
      api:
        type: cmd
        commands: ["node", "server.js"]
        dependencies: [db]
      web:
        type: hybrid
        defaultMode: dev
        modes:
          dev:
            type: cmd
            commands:
              - command: ["npm", "run", "dev"]
                directory: web
          docker:
            type: docker
            service: web
    presets:
      default:
        services: [api, web]
        modes:
          web: docker

Files are YAML, parsed with PyYAML and validated with pydantic. Models are
frozen; a loaded config is never mutated.
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Any, Literal, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import ConfigError
from .logging import get_logger

logger = get_logger(__name__)

CONFIG_BASE_NAMES = ("devrun",)

# Alternative spellings accepted for the type tag
TYPE_ALIASES = {
    "command": "cmd",
    "container": "docker",
}

NonEmptyStr = Annotated[str, Field(min_length=1)]


class _Model(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")


def _normalize_command(value: Any) -> Any:
    """Turn a bare argv list into a command object."""
    if isinstance(value, list) and all(isinstance(part, str) for part in value):
        return {"command": value}
    return value


def _normalize_type(value: Any) -> Any:
    if isinstance(value, dict) and value.get("type") in TYPE_ALIASES:
        return {**value, "type": TYPE_ALIASES[value["type"]]}
    return value


class CommandSpec(_Model):
    """One command line plus where and how to run it."""

    command: list[NonEmptyStr] = Field(min_length=1)
    directory: Optional[NonEmptyStr] = None
    restart_on_error: bool = Field(default=True, alias="restartOnError")

    @property
    def display(self) -> str:
        return " ".join(self.command)


class DependencySpec(_Model):
    """A dependency on another service in a given mode."""

    service: NonEmptyStr
    mode: NonEmptyStr = "dev"

    @model_validator(mode="before")
    @classmethod
    def _from_name(cls, value: Any) -> Any:
        if isinstance(value, str):
            return {"service": value}
        return value


class CommandServiceConfig(_Model):
    """A service made of one or more long-running OS processes."""

    type: Literal["cmd"]
    commands: list[CommandSpec] = Field(min_length=1)
    pre_commands: list[CommandSpec] = Field(default_factory=list, alias="preCommands")
    directory: Optional[NonEmptyStr] = None
    dependencies: list[DependencySpec] = Field(default_factory=list)
    health_check: bool = Field(default=False, alias="healthCheck")

    @field_validator("commands", mode="before")
    @classmethod
    def _normalize_commands(cls, value: Any) -> Any:
        # ["node", "server.js"] / {"command": [...]} / [[...], {...}]
        if isinstance(value, dict):
            return [value]
        if isinstance(value, list) and value and all(isinstance(part, str) for part in value):
            return [{"command": value}]
        if isinstance(value, list):
            return [_normalize_command(item) for item in value]
        return value

    @field_validator("pre_commands", mode="before")
    @classmethod
    def _normalize_pre_commands(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [_normalize_command(item) for item in value]
        return value

    def directory_for(self, spec: CommandSpec) -> Optional[str]:
        """Working directory for a command, falling back to the service's."""
        return spec.directory or self.directory


class ContainerServiceConfig(_Model):
    """A service delegated to a compose-managed container."""

    type: Literal["docker"]
    service: NonEmptyStr
    compose_file: NonEmptyStr = Field(default="docker-compose.yml", alias="composeFile")
    dependencies: list[DependencySpec] = Field(default_factory=list)
    health_check: bool = Field(default=True, alias="healthCheck")


ModeConfig = Annotated[
    Union[CommandServiceConfig, ContainerServiceConfig],
    Field(discriminator="type"),
]


class HybridServiceConfig(_Model):
    """A service offering several named modes."""

    type: Literal["hybrid"]
    default_mode: Optional[NonEmptyStr] = Field(default=None, alias="defaultMode")
    modes: dict[str, ModeConfig]

    @field_validator("modes", mode="before")
    @classmethod
    def _normalize_modes(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {name: _normalize_type(mode) for name, mode in value.items()}
        return value

    @field_validator("modes")
    @classmethod
    def _at_least_two_modes(cls, value: dict[str, Any]) -> dict[str, Any]:
        if len(value) < 2:
            raise ValueError("hybrid services need at least two modes")
        return value


ServiceConfig = Annotated[
    Union[CommandServiceConfig, ContainerServiceConfig, HybridServiceConfig],
    Field(discriminator="type"),
]

# Concrete configuration after hybrid resolution
ConcreteServiceConfig = Union[CommandServiceConfig, ContainerServiceConfig]


class Preset(_Model):
    """A named bundle of primary services."""

    services: list[NonEmptyStr] = Field(min_length=1)
    modes: dict[str, NonEmptyStr] = Field(default_factory=dict)


class DevConfig(_Model):
    """Root of a devrun config file."""

    services: dict[str, ServiceConfig]
    presets: dict[str, Preset] = Field(default_factory=dict)
    service_args_keyword: Optional[NonEmptyStr] = Field(default=None, alias="serviceArgsKeyword")

    @field_validator("services", mode="before")
    @classmethod
    def _normalize_services(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {name: _normalize_type(service) for name, service in value.items()}
        return value


def config_file_names() -> list[str]:
    """Candidate file names, in lookup order."""
    names = []
    for base in CONFIG_BASE_NAMES:
        for stem in (base, f".{base}"):
            for variant in (stem, f"{stem}.config"):
                names.extend([f"{variant}.yml", f"{variant}.yaml"])
    return names


def find_config_file(directory: Optional[Path] = None) -> Path:
    """Locate the config file in a directory (default: the working directory)."""
    directory = directory or Path.cwd()
    candidates = config_file_names()
    for name in candidates:
        path = directory / name
        if path.is_file():
            return path

    raise ConfigError(f"No config file found in {directory}. Expected one of: {', '.join(candidates)}")


def parse_config(data: Any, source: str = "<config>") -> DevConfig:
    """Validate already-parsed config data."""
    if not isinstance(data, dict):
        raise ConfigError(f"Invalid config {source}: top level must be a mapping")
    try:
        return DevConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid config {source}: {e}") from e


def load_config(path: Optional[Path] = None) -> DevConfig:
    """Load and validate a config file.

    Args:
        path: Explicit config path. Discovered in the working directory if None.

    Raises:
        ConfigError: File missing, unparsable or failing validation.
    """
    if path is None:
        path = find_config_file()
    path = Path(path)

    if not path.is_file():
        raise ConfigError(f"Config file not found: {path}")

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Could not read config {path}: {e}") from e

    config = parse_config(data, source=str(path))
    logger.debug("Loaded config", path=str(path), services=len(config.services), presets=len(config.presets))
    return config
