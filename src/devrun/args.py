"""Extra command-line arguments routed to individual service commands.

Arguments after the preset name are split on a keyword (``args`` unless the
config sets ``serviceArgsKeyword``). Each keyword is followed by a target
``SERVICE`` or ``SERVICE:INDEX`` and the arguments for it:

    devrun start default --inspect args web:1 --port 3001 args db -v

Arguments before the first keyword go to the preset's first primary service.

Inside a command, every ``$arg`` placeholder takes the next routed argument;
``\\$arg`` produces a literal ``$arg``. Routed arguments left over after all
placeholders are appended to the command.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Optional, Sequence

from .errors import DevrunError

PLACEHOLDER_PATTERN = re.compile(r"(\\?)\$arg(?![A-Za-z0-9_])")
PLACEHOLDER = "$arg"


@dataclass(frozen=True)
class ExtraArgs:
    """Routed extra arguments, keyed by (service name, command index)."""

    _routes: dict[tuple[str, int], tuple[str, ...]] = field(default_factory=dict)

    def for_command(self, service: str, index: int = 0) -> list[str]:
        """Arguments routed to one command of a service."""
        return list(self._routes.get((service, index), ()))

    def services(self) -> set[str]:
        return {service for service, _ in self._routes}

    def __bool__(self) -> bool:
        return bool(self._routes)


def _parse_target(token: str) -> tuple[str, int]:
    name, sep, index = token.rpartition(":")
    if sep and name and index.isdigit():
        return name, int(index)
    return token, 0


def route_extra_args(
    argv: Sequence[str],
    keyword: str,
    default_service: Optional[str] = None,
) -> ExtraArgs:
    """Split extra CLI arguments into per-command groups.

    Args:
        argv: Arguments following the preset name.
        keyword: Token that introduces a ``SERVICE[:INDEX]`` target.
        default_service: Receives arguments given before the first keyword.

    Raises:
        DevrunError: A keyword without a target, or leading arguments with no
            default service to receive them.
    """
    routes: dict[tuple[str, int], list[str]] = {}
    target: Optional[tuple[str, int]] = (default_service, 0) if default_service else None

    tokens = list(argv)
    i = 0
    while i < len(tokens):
        token = tokens[i]
        if token == keyword:
            if i + 1 >= len(tokens):
                raise DevrunError(f"'{keyword}' must be followed by SERVICE or SERVICE:INDEX")
            target = _parse_target(tokens[i + 1])
            routes.setdefault(target, [])
            i += 2
            continue
        if target is None:
            raise DevrunError(f"Argument '{token}' is not routed to a service; use '{keyword} SERVICE'")
        routes.setdefault(target, []).append(token)
        i += 1

    return ExtraArgs({key: tuple(values) for key, values in routes.items()})


def apply_extra_args(command: Sequence[str], extra: Sequence[str]) -> list[str]:
    """Substitute ``$arg`` placeholders in a command and append the rest.

    Placeholders with no argument left are removed; a token that consisted of
    nothing but such a placeholder is dropped entirely.
    """
    remaining = list(extra)
    result = []

    def _substitute(match: re.Match) -> str:
        if match.group(1):
            return PLACEHOLDER
        if remaining:
            return remaining.pop(0)
        return ""

    for token in command:
        if not PLACEHOLDER_PATTERN.search(token):
            result.append(token)
            continue
        replaced = PLACEHOLDER_PATTERN.sub(_substitute, token)
        if replaced or not PLACEHOLDER_PATTERN.fullmatch(token):
            result.append(replaced)

    return result + remaining
