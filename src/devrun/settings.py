"""Runtime settings for devrun."""

from pathlib import Path
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class DevrunSettings(BaseSettings):
    """Tunables for process and container handling.

    Reads from environment variables prefixed with DEVRUN_ (case-insensitive).
    E.g., DEVRUN_GRACE_PERIOD_MS=1000
    """

    model_config = SettingsConfigDict(env_prefix="DEVRUN_")

    # Diagnostics (stderr and optional JSON log file)
    log_level: str = "INFO"
    log_format: Literal["human", "json"] = "human"
    log_file: Optional[Path] = None

    # Config file; discovered in the working directory when unset
    config_path: Optional[Path] = None

    # Time a process gets between SIGTERM and SIGKILL
    grace_period_ms: int = Field(default=500, ge=0)

    # Container health polling
    health_check_attempts: int = Field(default=30, ge=1)
    health_check_delay_ms: int = Field(default=1000, ge=0)

    # Container engine invocation
    compose_command: list[str] = Field(
        default_factory=lambda: ["docker", "compose"],
        description="Command prefix for compose operations (JSON list in env)",
    )
    container_command: str = "docker"

    # Token introducing per-service extra arguments on the command line,
    # used when the config file does not set serviceArgsKeyword
    args_keyword: str = "args"

    @property
    def grace_period(self) -> float:
        """Grace window in seconds."""
        return self.grace_period_ms / 1000

    @property
    def health_check_delay(self) -> float:
        """Delay between health polls in seconds."""
        return self.health_check_delay_ms / 1000
