"""Command line entry point.

Usage:
    devrun start PRESET [ARG ...] [args SERVICE[:INDEX] ARG ...]
    devrun plan PRESET
    devrun presets

Commands:
    start    Start a preset and stream its output until Ctrl+C
    plan     Show the resolved startup order of a preset
    presets  List the presets defined in the config
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional, Sequence

from pydantic import ValidationError

from .args import route_extra_args
from .config import load_config
from .errors import DevrunError, PresetNotFound
from .logging import get_logger, setup_logging
from .orchestrator import Orchestrator
from .resolver import resolve
from .settings import DevrunSettings

logger = get_logger(__name__)


def _settings(args: argparse.Namespace) -> DevrunSettings:
    """Settings from the environment, overridden by explicit CLI flags."""
    settings = DevrunSettings()
    if args.config is not None:
        settings = settings.model_copy(update={"config_path": args.config})
    return settings


def cmd_start(args: argparse.Namespace, settings: DevrunSettings) -> int:
    """Start a preset."""
    config = load_config(settings.config_path)

    keyword = config.service_args_keyword or settings.args_keyword
    preset = config.presets.get(args.preset)
    if preset is None:
        raise PresetNotFound(args.preset)
    extra_args = route_extra_args(args.extra, keyword, preset.services[0])

    for service in sorted(extra_args.services()):
        if service not in config.services:
            logger.warning("Extra arguments routed to unknown service", service=service)

    orchestrator = Orchestrator(config, settings, extra_args=extra_args)
    return asyncio.run(orchestrator.run(args.preset))


def cmd_plan(args: argparse.Namespace, settings: DevrunSettings) -> int:
    """Print the resolved startup order."""
    plan = resolve(load_config(settings.config_path), args.preset)

    print(f"Preset: {plan.preset}")
    print(f"{'#':<4} {'Service':<24} {'Mode':<12} {'Type':<8} Role")
    print("-" * 64)
    for index, entry in enumerate(plan.entries, start=1):
        print(f"{index:<4} {entry.name:<24} {entry.mode:<12} {entry.config.type:<8} {entry.role.value}")

    for warning in plan.warnings:
        print(f"Warning: {warning}")
    return 0


def cmd_presets(args: argparse.Namespace, settings: DevrunSettings) -> int:
    """List presets."""
    config = load_config(settings.config_path)
    if not config.presets:
        print("No presets defined.")
        return 0

    print(f"{'Preset':<20} Services")
    print("-" * 64)
    for name, preset in config.presets.items():
        services = ", ".join(
            f"{service}:{preset.modes[service]}" if service in preset.modes else service
            for service in preset.services
        )
        print(f"{name:<20} {services}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="devrun",
        description="Run a local development environment",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-c", "--config", type=Path, help="Config file (default: discovered in the working directory)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    start = subparsers.add_parser("start", help="Start a preset")
    start.add_argument("preset", help="Preset to run")
    start.add_argument("extra", nargs=argparse.REMAINDER, help="Extra arguments for service commands")
    start.set_defaults(func=cmd_start)

    plan = subparsers.add_parser("plan", help="Show the resolved startup order")
    plan.add_argument("preset", help="Preset to resolve")
    plan.set_defaults(func=cmd_plan)

    presets = subparsers.add_parser("presets", help="List presets")
    presets.set_defaults(func=cmd_presets)

    return parser


def run(argv: Optional[Sequence[str]] = None) -> int:
    """Parse arguments and dispatch. Returns the exit code."""
    args = build_parser().parse_args(argv)
    try:
        settings = _settings(args)
    except ValidationError as e:
        print(f"Error: invalid DEVRUN_* environment settings\n{e}", file=sys.stderr)
        return 1

    setup_logging(settings.log_level, settings.log_format, settings.log_file, verbose=args.verbose)
    try:
        return args.func(args, settings)
    except DevrunError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return 130


def main() -> None:
    """Entry point for the devrun command."""
    sys.exit(run())


if __name__ == "__main__":
    main()
