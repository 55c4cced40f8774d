"""Line prefixing with SGR style tracking for multiplexed process output.

Several processes write to one terminal, each line tagged with a prefix such as
``api:dev:``. Programs emit color codes assuming they own the terminal: a color
set on one line may stay active for the next ten, and an output chunk can end in
the middle of a line or even in the middle of an escape sequence. To keep each
line rendering correctly under its prefix, every stream carries a StreamState:

* the nine SGR attribute slots active at the end of the last complete line, and
* the text of the current line that has not been terminated yet.

For each complete line the active style is re-emitted after the prefix, and a
reset is appended when a style is still active at the end of the line, so colors
never leak into the next prefix or into another process's output. Screen and
line clearing sequences are dropped; they make no sense once output is
interleaved.

Everything here is pure: identical input and state give identical output.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, fields, replace
from typing import Optional

ESC = "\x1b"
RESET = "\x1b[0m"

# Longest partial line held back before it is emitted as a line of its own
MAX_PENDING_CHARS = 64 * 1024

SGR_PATTERN = re.compile(r"\x1b\[([0-9;]*)m")

# Clear screen/scrollback, cursor position/home, clear line, full terminal reset
CONTROL_PATTERN = re.compile(r"\x1b\[[0-3]?J|\x1b\[[0-9;]*H|\x1b\[[0-2]?K|\x1bc")

EXTENDED_FOREGROUND = 38
EXTENDED_BACKGROUND = 48
COLOR_MODE_256 = 5
COLOR_MODE_RGB = 2

# SGR parameter -> slot it sets
SET_CODES: dict[int, str] = {
    1: "bold_dim",
    2: "bold_dim",
    3: "italic",
    4: "underline",
    21: "underline",  # double underline
    5: "blink",
    6: "blink",
    7: "reverse",
    8: "hidden",
    9: "strikethrough",
}
SET_CODES.update({code: "foreground" for code in range(30, 38)})
SET_CODES.update({code: "foreground" for code in range(90, 98)})
SET_CODES.update({code: "background" for code in range(40, 48)})
SET_CODES.update({code: "background" for code in range(100, 108)})

# SGR parameter -> slot it clears
RESET_CODES: dict[int, str] = {
    22: "bold_dim",
    23: "italic",
    24: "underline",
    25: "blink",
    27: "reverse",
    28: "hidden",
    29: "strikethrough",
    39: "foreground",
    49: "background",
}


def _sgr(params: list[int]) -> str:
    return f"{ESC}[{';'.join(str(p) for p in params)}m"


def _parse_params(raw: str) -> list[int]:
    # An empty parameter means 0, so "ESC[m" and "ESC[;31m" both reset first
    return [int(part) if part else 0 for part in raw.split(";")]


@dataclass(frozen=True)
class FormattingState:
    """Active text attributes, one slot per SGR category.

    Each slot is None or the escape sequence that last set that category.
    Field order is the order slots are re-emitted in.
    """

    foreground: Optional[str] = None
    background: Optional[str] = None
    bold_dim: Optional[str] = None
    italic: Optional[str] = None
    underline: Optional[str] = None
    blink: Optional[str] = None
    reverse: Optional[str] = None
    hidden: Optional[str] = None
    strikethrough: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return all(value is None for value in self.slots())

    def slots(self) -> tuple[Optional[str], ...]:
        return tuple(getattr(self, f.name) for f in fields(self))

    def render(self) -> str:
        """Escape sequences re-creating this style, in slot order."""
        return "".join(value for value in self.slots() if value is not None)

    def apply_sequence(self, raw_params: str) -> FormattingState:
        """Apply the parameters of one ``ESC [ params m`` sequence."""
        params = _parse_params(raw_params)
        updates: dict[str, Optional[str]] = {}
        state = self
        i = 0
        while i < len(params):
            code = params[i]
            if code == 0:
                state = FormattingState()
                updates = {}
            elif code in (EXTENDED_FOREGROUND, EXTENDED_BACKGROUND):
                slot = "foreground" if code == EXTENDED_FOREGROUND else "background"
                color_mode = params[i + 1] if i + 1 < len(params) else None
                if color_mode == COLOR_MODE_256:
                    width = 3
                elif color_mode == COLOR_MODE_RGB:
                    width = 5
                else:
                    # Unknown or missing color mode: skip the mode parameter too
                    i += 2
                    continue
                if i + width > len(params):
                    # Truncated color, nothing after it can be trusted
                    break
                updates[slot] = _sgr(params[i:i + width])
                i += width
                continue
            elif code in SET_CODES:
                updates[SET_CODES[code]] = _sgr([code])
            elif code in RESET_CODES:
                updates[RESET_CODES[code]] = None
            i += 1

        return replace(state, **updates) if updates else state

    def apply_text(self, text: str) -> FormattingState:
        """Apply every SGR sequence found in text, left to right."""
        state = self
        for match in SGR_PATTERN.finditer(text):
            state = state.apply_sequence(match.group(1))
        return state


@dataclass(frozen=True)
class StreamState:
    """Everything carried from one chunk of a stream to the next."""

    style: FormattingState = field(default_factory=FormattingState)
    pending: str = ""


def strip_control_sequences(text: str) -> str:
    """Remove screen/line clearing and terminal reset sequences."""
    return CONTROL_PATTERN.sub("", text)


def format_line(line: str, prefix: str, style: FormattingState) -> tuple[str, FormattingState]:
    """Render one complete line (without its newline) under a prefix.

    Returns:
        The rendered line and the style active after it.
    """
    line = strip_control_sequences(line)
    if line.endswith("\r"):
        line = line[:-1]

    after = style.apply_text(line)
    body = style.render() + line
    if not after.is_empty:
        body += RESET

    if not body:
        return prefix, after
    if not prefix:
        return body, after
    return f"{prefix} {body}", after


def _format_lines(lines: list[str], prefix: str, style: FormattingState) -> tuple[str, FormattingState]:
    rendered = []
    for line in lines:
        text, style = format_line(line, prefix, style)
        rendered.append(text)
    if not rendered:
        return "", style
    return "\n".join(rendered) + "\n", style


def format_chunk(chunk: str, prefix: str, state: StreamState) -> tuple[str, StreamState]:
    """Format one raw output chunk of a stream.

    Only complete lines are emitted. The unterminated remainder is kept in the
    returned state and completed by the next chunk, which makes chunk boundaries
    invisible in the output, even when they split an escape sequence.

    Args:
        chunk: Decoded text as read from the process.
        prefix: Line prefix, e.g. ``"api:dev:"``.
        state: State returned by the previous call for the same stream.

    Returns:
        Newline-terminated display text (possibly empty) and the new state.
    """
    parts = (state.pending + chunk).split("\n")
    pending = parts.pop()
    if len(pending) > MAX_PENDING_CHARS:
        parts.append(pending)
        pending = ""

    text, style = _format_lines(parts, prefix, state.style)
    return text, StreamState(style=style, pending=pending)


def flush(prefix: str, state: StreamState) -> tuple[str, StreamState]:
    """Emit a stream's unterminated last line, e.g. when the process exits."""
    if not state.pending:
        return "", state
    text, style = _format_lines([state.pending], prefix, state.style)
    return text, StreamState(style=style)
