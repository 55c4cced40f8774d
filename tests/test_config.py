"""Tests for config loading and validation."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from conftest import make_config
from devrun.config import (
    CommandServiceConfig,
    ContainerServiceConfig,
    HybridServiceConfig,
    config_file_names,
    find_config_file,
    load_config,
    parse_config,
)
from devrun.errors import ConfigError

CONFIG_YAML = """\
serviceArgsKeyword: with
services:
  db:
    type: container
    service: postgres
    composeFile: compose.dev.yml
  api:
    type: cmd
    directory: backend
    preCommands:
      - [npm, install]
    commands:
      - [node, server.js]
      - command: [node, worker.js]
        directory: workers
        restartOnError: false
    dependencies:
      - db
      - service: cache
        mode: docker
presets:
  default:
    services: [api]
    modes:
      api: dev
"""


class TestServiceConfig:
    def test_command_list_shorthand(self) -> None:
        config = make_config({"services": {"api": {"type": "cmd", "commands": ["node", "server.js"]}}})
        service = config.services["api"]

        assert isinstance(service, CommandServiceConfig)
        assert len(service.commands) == 1
        assert service.commands[0].command == ["node", "server.js"]
        assert service.commands[0].restart_on_error is True
        assert service.health_check is False

    def test_single_command_object(self) -> None:
        config = make_config(
            {"services": {"api": {"type": "cmd", "commands": {"command": ["node"], "directory": "api"}}}}
        )
        spec = config.services["api"].commands[0]
        assert spec.command == ["node"]
        assert spec.directory == "api"

    def test_command_directory_falls_back_to_service(self) -> None:
        config = make_config(
            {
                "services": {
                    "api": {
                        "type": "cmd",
                        "directory": "backend",
                        "commands": [["a"], {"command": ["b"], "directory": "other"}],
                    }
                }
            }
        )
        service = config.services["api"]
        assert service.directory_for(service.commands[0]) == "backend"
        assert service.directory_for(service.commands[1]) == "other"

    def test_container_defaults(self) -> None:
        config = make_config({"services": {"db": {"type": "docker", "service": "postgres"}}})
        service = config.services["db"]

        assert isinstance(service, ContainerServiceConfig)
        assert service.compose_file == "docker-compose.yml"
        assert service.health_check is True

    @pytest.mark.parametrize("alias,expected", [("command", CommandServiceConfig), ("container", ContainerServiceConfig)])
    def test_type_aliases(self, alias: str, expected: type) -> None:
        data = {"type": alias, "commands": ["run"]} if alias == "command" else {"type": alias, "service": "x"}
        config = make_config({"services": {"svc": data}})
        assert isinstance(config.services["svc"], expected)

    def test_hybrid_modes(self) -> None:
        config = make_config(
            {
                "services": {
                    "web": {
                        "type": "hybrid",
                        "defaultMode": "docker",
                        "modes": {
                            "dev": {"type": "command", "commands": ["npm", "start"]},
                            "docker": {"type": "docker", "service": "web"},
                        },
                    }
                }
            }
        )
        service = config.services["web"]

        assert isinstance(service, HybridServiceConfig)
        assert service.default_mode == "docker"
        assert isinstance(service.modes["dev"], CommandServiceConfig)
        assert isinstance(service.modes["docker"], ContainerServiceConfig)

    def test_dependency_string_means_dev_mode(self) -> None:
        config = make_config(
            {"services": {"api": {"type": "cmd", "commands": ["run"], "dependencies": ["db"]}}}
        )
        dependency = config.services["api"].dependencies[0]
        assert dependency.service == "db"
        assert dependency.mode == "dev"

    def test_config_is_frozen(self, api_db_config) -> None:
        with pytest.raises(ValidationError):
            api_db_config.services["api"].directory = "elsewhere"


class TestValidationErrors:
    @pytest.mark.parametrize(
        "service",
        [
            {"type": "cmd", "commands": []},
            {"type": "cmd", "commands": [[]]},
            {"type": "cmd", "commands": ["node", ""]},
            {"type": "docker"},
            {"type": "hybrid", "modes": {"dev": {"type": "cmd", "commands": ["run"]}}},
            {"type": "lambda", "handler": "x"},
            {"type": "cmd", "commands": ["run"], "unexpected": True},
        ],
    )
    def test_invalid_service(self, service: dict) -> None:
        with pytest.raises(ConfigError, match="Invalid config <test>"):
            make_config({"services": {"svc": service}})

    def test_empty_preset(self) -> None:
        with pytest.raises(ConfigError):
            make_config(
                {
                    "services": {"api": {"type": "cmd", "commands": ["run"]}},
                    "presets": {"default": {"services": []}},
                }
            )

    def test_top_level_must_be_mapping(self) -> None:
        with pytest.raises(ConfigError, match="top level must be a mapping"):
            parse_config(["services"], source="<test>")

    def test_services_required(self) -> None:
        with pytest.raises(ConfigError):
            parse_config({"presets": {}}, source="<test>")


class TestLoadConfig:
    def test_load_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "devrun.yml"
        path.write_text(CONFIG_YAML)

        config = load_config(path)

        assert config.service_args_keyword == "with"
        assert config.services["db"].compose_file == "compose.dev.yml"
        api = config.services["api"]
        assert [spec.command for spec in api.pre_commands] == [["npm", "install"]]
        assert api.commands[1].restart_on_error is False
        assert [(d.service, d.mode) for d in api.dependencies] == [("db", "dev"), ("cache", "docker")]
        assert config.presets["default"].modes == {"api": "dev"}

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "nope.yml")

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "devrun.yml"
        path.write_text("services: [unclosed\n")

        with pytest.raises(ConfigError, match="Could not read config"):
            load_config(path)

    def test_empty_file(self, tmp_path: Path) -> None:
        path = tmp_path / "devrun.yml"
        path.write_text("")

        with pytest.raises(ConfigError, match="top level must be a mapping"):
            load_config(path)

    def test_discovery_in_working_directory(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        (tmp_path / ".devrun.yaml").write_text(CONFIG_YAML)
        monkeypatch.chdir(tmp_path)

        config = load_config()
        assert "api" in config.services


class TestFindConfigFile:
    def test_names_in_lookup_order(self) -> None:
        names = config_file_names()
        assert names[:4] == ["devrun.yml", "devrun.yaml", "devrun.config.yml", "devrun.config.yaml"]
        assert ".devrun.yml" in names
        assert ".devrun.config.yaml" in names

    def test_first_match_wins(self, tmp_path: Path) -> None:
        (tmp_path / "devrun.config.yml").write_text("")
        (tmp_path / "devrun.yaml").write_text("")

        assert find_config_file(tmp_path) == tmp_path / "devrun.yaml"

    def test_nothing_found(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError, match="No config file found"):
            find_config_file(tmp_path)
