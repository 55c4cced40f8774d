"""Tests for the devrun command line."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from conftest import python_command
from devrun.cli import build_parser, run


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    data = {
        "services": {
            "db": {"type": "docker", "service": "postgres"},
            "echo": {
                "type": "cmd",
                "commands": python_command("import sys; print('argv', sys.argv[1:])"),
            },
            "api": {"type": "cmd", "commands": ["node", "server.js"], "dependencies": ["db"]},
            "web": {
                "type": "hybrid",
                "modes": {
                    "dev": {"type": "cmd", "commands": ["npm", "start"]},
                    "docker": {"type": "docker", "service": "web"},
                },
            },
        },
        "presets": {
            "echo": {"services": ["echo"]},
            "default": {"services": ["api", "web"], "modes": {"web": "docker"}},
        },
    }
    path = tmp_path / "devrun.yml"
    path.write_text(yaml.safe_dump(data))
    return path


class TestParser:
    def test_start_collects_extra_arguments(self) -> None:
        args = build_parser().parse_args(["start", "default", "--inspect", "args", "web", "-v"])
        assert args.preset == "default"
        assert args.extra == ["--inspect", "args", "web", "-v"]

    def test_global_options(self) -> None:
        args = build_parser().parse_args(["-v", "-c", "other.yml", "presets"])
        assert args.verbose is True
        assert args.config == Path("other.yml")

    def test_command_required(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestCommands:
    def test_plan(self, config_file: Path, capsys: pytest.CaptureFixture[str]) -> None:
        assert run(["-c", str(config_file), "plan", "default"]) == 0

        out = capsys.readouterr().out
        lines = [line.split() for line in out.splitlines()[3:]]
        assert lines == [
            ["1", "db", "dev", "docker", "dependency"],
            ["2", "api", "dev", "cmd", "primary"],
            ["3", "web", "docker", "docker", "primary"],
        ]

    def test_presets(self, config_file: Path, capsys: pytest.CaptureFixture[str]) -> None:
        assert run(["-c", str(config_file), "presets"]) == 0

        out = capsys.readouterr().out
        assert "api, web:docker" in out
        assert "echo" in out

    def test_unknown_preset(self, config_file: Path, capsys: pytest.CaptureFixture[str]) -> None:
        assert run(["-c", str(config_file), "plan", "nope"]) == 1
        assert "Error: Preset 'nope' not found" in capsys.readouterr().err

    def test_start_unknown_preset_with_extra_arguments(
        self, config_file: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        assert run(["-c", str(config_file), "start", "nope", "--flag", "value"]) == 1
        assert "Error: Preset 'nope' not found" in capsys.readouterr().err

    def test_missing_config(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        assert run(["-c", str(tmp_path / "nope.yml"), "presets"]) == 1
        assert "Config file not found" in capsys.readouterr().err

    def test_config_from_environment(
        self, config_file: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
    ) -> None:
        monkeypatch.setenv("DEVRUN_CONFIG_PATH", str(config_file))
        assert run(["presets"]) == 0
        assert "echo" in capsys.readouterr().out

    def test_start_passes_extra_arguments(self, config_file: Path, capsys: pytest.CaptureFixture[str]) -> None:
        assert run(["-c", str(config_file), "start", "echo", "--flag", "value"]) == 0
        assert "echo:dev: argv ['--flag', 'value']" in capsys.readouterr().out

    def test_invalid_environment_settings(
        self, config_file: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
    ) -> None:
        monkeypatch.setenv("DEVRUN_GRACE_PERIOD_MS", "-5")
        assert run(["-c", str(config_file), "presets"]) == 1
        assert "invalid DEVRUN_* environment settings" in capsys.readouterr().err
