from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, Optional, Tuple

_TRUE = ("1", "true", "yes", "y", "on")


def _parse_line(line: str) -> Optional[Tuple[str, str]]:
    text = line.strip()
    if text.startswith("export "):
        text = text[7:].lstrip()
    if not text or text.startswith("#") or "=" not in text:
        return None
    name, _, raw = text.partition("=")
    name, raw = name.strip(), raw.strip()
    if len(raw) >= 2 and raw[0] == raw[-1] and raw[0] in "'\"":
        raw = raw[1:-1]
    return (name, raw) if name else None


def read_env_file(path: Path) -> Dict[str, str]:
    """`KEY=value` pairs of a dotenv file; a missing file reads as empty."""
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except FileNotFoundError:
        return {}
    pairs: Dict[str, str] = {}
    for line in lines:
        parsed = _parse_line(line)
        if parsed is not None:
            pairs[parsed[0]] = parsed[1]
    return pairs


def load_env_file(path: Path, *, override: bool = False) -> None:
    """Copy a dotenv file into os.environ. Variables already set win unless `override`."""
    for name, value in read_env_file(path).items():
        if override or name not in os.environ:
            os.environ[name] = value


def env_flag(name: str) -> Optional[bool]:
    v = os.getenv(name)
    return None if v is None else v.strip().lower() in _TRUE


def _env_number(name: str, cast):  # noqa: ANN001
    v = os.getenv(name)
    if v is None:
        return None
    try:
        return cast(v)
    except ValueError:
        return None


def env_int(name: str) -> Optional[int]:
    return _env_number(name, int)


def env_float(name: str) -> Optional[float]:
    return _env_number(name, float)
