"""``.env`` parsing and Compose-style variable substitution.

The compose file of a deployed stack refers to ports and credentials
through ``${VAR}`` placeholders (``"${DOCKER_DB_PORT}:3306"``,
``--requirepass ${REDIS_PASSWORD}``) whose values come from the ``.env``
file next to it. This module reproduces the parts of Compose's behaviour
shipline needs to validate a stack before shipping it.

Key Concepts:
    parse_env: ``.env`` text -> ordered ``dict[str, str]``.
    Interpolator: Substitutes ``$VAR``, ``${VAR}``, ``${VAR:-default}``,
        ``${VAR-default}``, ``${VAR:?error}``, ``${VAR?error}``,
        ``${VAR:+alt}``, ``${VAR+alt}`` and ``$$`` over strings or whole
        parsed YAML documents, recording unresolved names in ``missing``.
    write_env_file: dict -> ``.env`` text with quoting where required.

Parsing rules:
    - blank lines and lines starting with ``#`` are ignored
    - an ``export`` prefix is accepted and dropped
    - single-quoted values are literal
    - double-quoted values understand ``\\n``, ``\\t``, ``\\"`` and ``\\\\``
      and are interpolated against earlier entries
    - unquoted values end at `` #`` (inline comment) and are stripped,
      then interpolated against earlier entries

Tags:
    env, dotenv, interpolation, compose, configuration
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from shipline.core.errors import ComposeFileError

logger = logging.getLogger(__name__)

_NAME = r"[A-Za-z_][A-Za-z0-9_]*"
_KEY_RE = re.compile(rf"^{_NAME}$")
_PATTERN = re.compile(
    rf"""
    \$(?:
        (?P<escaped>\$)                                   |
        (?P<named>{_NAME})                                |
        \{{(?P<braced>{_NAME})(?:(?P<op>:?[-?+])(?P<arg>[^}}]*))?\}} |
        (?P<invalid>\{{)
    )
    """,
    re.VERBOSE,
)
_DQ_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", '"': '"', "\\": "\\", "$": "$$"}


class Interpolator:
    """Compose-style ``${VAR}`` substitution against a variable mapping.

    Parameters
    ----------
    env
        Variables available for substitution.

    Example::

        interp = Interpolator({"DOCKER_APP_PORT": "8080"})
        interp.interpolate("${DOCKER_APP_PORT}:80")      # "8080:80"
        interp.interpolate("${DOCKER_APP_SSL_PORT}:443") # ":443"
        interp.missing                                   # {"DOCKER_APP_SSL_PORT"}
    """

    def __init__(self, env: Mapping[str, str]) -> None:
        self.env = env
        self.missing: set[str] = set()

    def interpolate(self, value: str) -> str:
        """Substitute every placeholder in *value*."""
        return _PATTERN.sub(self._replace, value)

    def interpolate_data(self, data: Any) -> Any:
        """Walk a parsed YAML document and interpolate every string value."""
        if isinstance(data, str):
            return self.interpolate(data)
        if isinstance(data, dict):
            return {key: self.interpolate_data(value) for key, value in data.items()}
        if isinstance(data, list):
            return [self.interpolate_data(item) for item in data]
        return data

    def _replace(self, match: re.Match[str]) -> str:
        if match.group("escaped") is not None:
            return "$"
        if match.group("invalid") is not None:
            raise ComposeFileError(
                f"Invalid interpolation format near {match.string[match.start():match.start() + 20]!r}"
            )

        name = match.group("named") or match.group("braced")
        op = match.group("op")
        arg = match.group("arg") or ""
        is_set = name in self.env
        value = self.env.get(name, "")

        if op is None:
            if not is_set:
                self.missing.add(name)
            return value
        if op == ":-":
            return value if value else self.interpolate(arg)
        if op == "-":
            return value if is_set else self.interpolate(arg)
        if op == ":+":
            return self.interpolate(arg) if value else ""
        if op == "+":
            return self.interpolate(arg) if is_set else ""
        # ":?" and "?"
        if (op == ":?" and not value) or (op == "?" and not is_set):
            raise ComposeFileError(
                f"Required variable {name!r} is missing a value: {arg or 'not set'}"
            ).with_context(variable=name)
        return value


def interpolate(value: str, env: Mapping[str, str]) -> str:
    """Convenience wrapper: substitute placeholders in a single string."""
    return Interpolator(env).interpolate(value)


def parse_env(text: str) -> dict[str, str]:
    """Parse ``.env`` file content into an ordered mapping.

    Raises
    ------
    ComposeFileError
        If a line is not ``KEY=VALUE`` or a quoted value is unterminated.
    """
    values: dict[str, str] = {}
    for lineno, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export "):].lstrip()

        if "=" not in line:
            raise ComposeFileError(f"Line {lineno}: expected KEY=VALUE, got {raw!r}")
        key, _, rest = line.partition("=")
        key = key.strip()
        if not _KEY_RE.match(key):
            raise ComposeFileError(f"Line {lineno}: invalid variable name {key!r}")

        rest = rest.lstrip()
        if rest.startswith("'"):
            end = rest.find("'", 1)
            if end == -1:
                raise ComposeFileError(f"Line {lineno}: unterminated single quote")
            values[key] = rest[1:end]
        elif rest.startswith('"'):
            values[key] = Interpolator(values).interpolate(_parse_double_quoted(rest, lineno))
        else:
            comment = re.search(r"\s#", rest)
            if comment:
                rest = rest[:comment.start()]
            values[key] = Interpolator(values).interpolate(rest.strip())
    return values


def _parse_double_quoted(rest: str, lineno: int) -> str:
    out: list[str] = []
    i = 1
    while i < len(rest):
        ch = rest[i]
        if ch == "\\" and i + 1 < len(rest):
            nxt = rest[i + 1]
            out.append(_DQ_ESCAPES.get(nxt, "\\" + nxt))
            i += 2
            continue
        if ch == '"':
            return "".join(out)
        out.append(ch)
        i += 1
    raise ComposeFileError(f"Line {lineno}: unterminated double quote")


def load_env_file(path: str | Path) -> dict[str, str]:
    """Read and parse a ``.env`` file."""
    p = Path(path)
    try:
        text = p.read_text(encoding="utf-8")
    except OSError as exc:
        raise ComposeFileError(f"Cannot read env file {p}: {exc}", cause=exc) from exc
    values = parse_env(text)
    logger.debug("envfile.loaded", extra={"path": str(p), "keys": len(values)})
    return values


def format_env(values: Mapping[str, str]) -> str:
    """Render a mapping as ``.env`` text that ``parse_env`` reads back."""
    lines = []
    for key, value in values.items():
        if not _KEY_RE.match(key):
            raise ComposeFileError(f"Invalid variable name {key!r}")
        if value and re.fullmatch(r"[A-Za-z0-9_./:@,+=-]+", value):
            lines.append(f"{key}={value}")
        else:
            escaped = (
                value.replace("\\", "\\\\")
                .replace('"', '\\"')
                .replace("\n", "\\n")
                .replace("$", "\\$")
            )
            lines.append(f'{key}="{escaped}"')
    return "\n".join(lines) + "\n"


def write_env_file(path: str | Path, values: Mapping[str, str]) -> Path:
    """Write *values* to *path* as a ``.env`` file."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(format_env(values), encoding="utf-8")
    return p


__all__ = [
    "Interpolator",
    "format_env",
    "interpolate",
    "load_env_file",
    "parse_env",
    "write_env_file",
]
