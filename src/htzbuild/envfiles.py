"""Load environment variables from a folder of dotenv files."""

from __future__ import annotations

import logging
from collections.abc import Mapping, MutableMapping
from pathlib import Path

from dotenv.parser import parse_stream

from htzbuild.errors import ConfigError

logger = logging.getLogger(__name__)


def _unquote(raw: str) -> str:
    """Apply the env-folder quoting rules to the text after ``=``.

    Double-quoted values expand only ``\\"`` and ``\\n``; single-quoted and
    bare values are kept as written, including ``\\t`` or `` #`` text.
    """
    value = raw.strip()
    if len(value) >= 2 and value[0] == value[-1] == '"':
        return value[1:-1].replace('\\"', '"').replace("\\n", "\n")
    if len(value) >= 2 and value[0] == value[-1] == "'":
        return value[1:-1]
    return value


def parse_env_file(path: Path) -> dict[str, str]:
    """Variables declared in one file. Lines without ``=`` are ignored."""
    result: dict[str, str] = {}
    with path.open(encoding="utf-8") as stream:
        for binding in parse_stream(stream):
            if binding.key is None or binding.value is None:
                continue
            _, _, raw = binding.original.string.partition("=")
            result[binding.key] = _unquote(raw)
    return result


def load_env_folder(folder: str | Path) -> dict[str, str]:
    """Read every file in *folder* (sorted by name) and merge their variables.

    Later files override earlier ones.
    """
    path = Path(folder).resolve()
    if not path.exists():
        raise ConfigError(f"Env folder not found: {path}")
    if not path.is_dir():
        raise ConfigError(f"Env path is not a directory: {path}")

    result: dict[str, str] = {}
    for entry in sorted(p for p in path.iterdir() if p.is_file()):
        loaded = parse_env_file(entry)
        logger.debug("loaded %d variables from %s", len(loaded), entry.name)
        result.update(loaded)
    return result


def apply_env(values: Mapping[str, str], target: MutableMapping[str, str]) -> list[str]:
    """Copy *values* into *target* without overriding existing keys.

    Returns the names that were actually applied.
    """
    applied = []
    for key, value in values.items():
        if key not in target:
            target[key] = value
            applied.append(key)
    return applied
