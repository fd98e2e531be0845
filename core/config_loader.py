"""Shared helpers for locating and loading configuration mappings."""
from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Sequence

import json
import tomllib

import yaml


ConfigLoader = Callable[[Path], Any]


def _load_toml(path: Path) -> Any:
    with path.open("rb") as handle:
        return tomllib.load(handle)


def _load_json(path: Path) -> Any:
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def _load_yaml(path: Path) -> Any:
    with path.open("r", encoding="utf-8") as handle:
        return yaml.safe_load(handle)


FILE_LOADERS: Dict[str, ConfigLoader] = {
    ".toml": _load_toml,
    ".json": _load_json,
    ".yaml": _load_yaml,
    ".yml": _load_yaml,
}
"""Suffix -> loader; the suffix alone decides the format."""


def load_config_file(path: Path) -> Mapping[str, Any]:
    """Decode ``path`` and return its root mapping (an empty file yields ``{}``)."""

    loader = FILE_LOADERS.get(path.suffix.lower())
    if loader is None:
        raise ValueError(
            f"Unsupported configuration file extension: {path.suffix or '<none>'}. "
            f"Supported: {', '.join(sorted(FILE_LOADERS))}"
        )
    data = loader(path)
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise TypeError(f"Configuration file '{path}' must contain a mapping at the root")
    return data


def find_config_file(directory: Path, stem: str, *, suffixes: Iterable[str] | None = None) -> Path | None:
    """Return the single configuration file named ``stem`` inside ``directory``.

    Several formats for the same stem (``croft.toml`` next to ``croft.yaml``)
    are ambiguous and rejected.
    """

    candidates = (directory / f"{stem}{suffix.lower()}" for suffix in (suffixes or FILE_LOADERS))
    found = [path for path in candidates if path.is_file()]
    if len(found) > 1:
        raise ValueError(
            f"Multiple configuration files found for '{stem}': {', '.join(path.name for path in found)}. "
            "Keep exactly one."
        )
    return found[0] if found else None


def merge_mappings(base: Mapping[str, Any], overlay: Mapping[str, Any]) -> Dict[str, Any]:
    """Recursively overlay ``overlay`` on ``base``; non-mapping values replace."""

    merged: Dict[str, Any] = dict(base)
    for key, value in overlay.items():
        current = merged.get(key)
        both_tables = isinstance(current, Mapping) and isinstance(value, Mapping)
        merged[key] = merge_mappings(current, value) if both_tables else value
    return merged


def normalize_string_list(value: Any, *, field_name: str | None = None) -> List[str]:
    """Accept one string or a sequence of strings; blanks are dropped."""

    label = f"{field_name} " if field_name else ""
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    elif not isinstance(value, Sequence):
        raise TypeError(f"{label}must be a string or sequence of strings")

    items: List[str] = []
    for item in value:
        if not isinstance(item, str):
            raise TypeError(f"{label}entries must be strings")
        if item.strip():
            items.append(item.strip())
    return items


__all__ = [
    "ConfigLoader",
    "FILE_LOADERS",
    "find_config_file",
    "load_config_file",
    "merge_mappings",
    "normalize_string_list",
]
