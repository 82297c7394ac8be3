"""
NUT network protocol helpers.

Formatting of outbound command tokens and parsing of ``VAR`` response
lines. The protocol is ASCII and newline-delimited; values in ``VAR``
lines are double-quoted with ``\\"`` and ``\\\\`` escapes.
"""

import re
from typing import NamedTuple

_BARE_TOKEN_RE = re.compile(r"^[A-Za-z0-9_.:-]+$")
_VAR_LINE_RE = re.compile(r'^VAR\s+(\S+)\s+(\S+)\s+"((?:[^"\\]|\\.)*)"$')
_UNESCAPE_RE = re.compile(r"\\(.)")


class NUTVar(NamedTuple):
    ups: str
    name: str
    value: str


def escape_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def unescape_value(value: str) -> str:
    return _UNESCAPE_RE.sub(r"\1", value)


def format_command_token(token: str) -> str:
    """Return ``token`` verbatim when safe, otherwise quoted and escaped."""
    if _BARE_TOKEN_RE.match(token):
        return token
    return f'"{escape_value(token)}"'


def format_command(*parts: str) -> str:
    """Build a request line from a verb and its arguments.

    The leading words (``LIST VAR``, ``GET VAR``...) are passed through
    the same quoting rule, which leaves them untouched.
    """
    return " ".join(format_command_token(part) for part in parts) + "\n"


def parse_var_line(line: str) -> NUTVar | None:
    """Parse a ``VAR <ups> <name> "<value>"`` line, or return None."""
    match = _VAR_LINE_RE.match(line)
    if not match:
        return None
    ups, name, raw = match.groups()
    return NUTVar(ups, name, unescape_value(raw))


def format_var_line(ups: str, name: str, value: str) -> str:
    return f'VAR {ups} {name} "{escape_value(value)}"'


def is_error_line(line: str) -> bool:
    return line == "ERR" or line.startswith("ERR ")
