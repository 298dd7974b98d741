"""
KEY=value files: epicflow.env and the checkpoint.

These files are read as data and never sourced, but people do source them by
hand, so anything a shell would expand or chain is refused on read and write.
"""

import re
from pathlib import Path

_KEY = re.compile(r'^[A-Z][A-Z0-9_]*$')
_SHELL_SYNTAX = re.compile(r'`|\$\(|\$\{|;|&&|\|')
_QUOTES = ('"', "'")


def _unquote(value: str) -> str:
    if len(value) > 1 and value[0] in _QUOTES and value[-1] == value[0]:
        return value[1:-1]
    return value


def _check_value(key: str, value: str, where: str) -> None:
    if _SHELL_SYNTAX.search(value):
        raise ValueError(f"{where}Forbidden shell syntax in value for {key}")


def parse_env_text(text: str, source: str = "<string>") -> dict[str, str]:
    """
    Read KEY=value lines. '#' lines and blank lines are ignored, one level
    of matching quotes is removed.

    Raises:
        ValueError: naming source:line for a line without '=', a key that
            isn't UPPER_SNAKE, or a value with shell syntax
    """
    values: dict[str, str] = {}
    for lineno, line in enumerate(map(str.strip, text.splitlines()), 1):
        if not line or line[0] == '#':
            continue
        where = f"{source}:{lineno}: "
        key, sep, value = line.partition('=')
        if not sep:
            raise ValueError(f"{where}Invalid syntax (no '=')")
        key = key.strip()
        if not _KEY.match(key):
            raise ValueError(f"{where}Invalid key '{key}'")
        value = _unquote(value.strip())
        _check_value(key, value, where)
        values[key] = value
    return values


def load_env(filepath: str | Path) -> dict[str, str]:
    path = Path(filepath)
    if not path.is_file():
        raise FileNotFoundError(f"Env file not found: {path}")
    return parse_env_text(path.read_text(), str(path))


def write_env(filepath: str | Path, values: dict[str, object], header: str | None = None) -> None:
    """
    Write values so load_env() reads them back unchanged (None becomes '').

    Raises:
        ValueError: for a bad key, or a value with a newline or shell syntax
    """
    out = [f"# {line}" for line in header.splitlines()] if header else []
    for key, raw in values.items():
        if not _KEY.match(key):
            raise ValueError(f"Invalid key '{key}'")
        value = "" if raw is None else str(raw)
        if "\n" in value:
            raise ValueError(f"Value for {key} spans lines")
        _check_value(key, value, "")
        out.append(f"{key}={value}")

    path = Path(filepath)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(out) + "\n")
