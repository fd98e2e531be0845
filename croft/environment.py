"""Composition of resolved toolchains into isolated process environments."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Sequence
import os
import platform

from core.template import TemplateResolver, extract_placeholders

from .console import Console


BUILD = "build"
SHELL = "shell"
SOURCE_DATE_EPOCH = "315532800"

PATH_VARIABLES = (
    "PATH",
    "LIBRARY_PATH",
    "LD_LIBRARY_PATH",
    "DYLD_LIBRARY_PATH",
    "C_INCLUDE_PATH",
    "CPLUS_INCLUDE_PATH",
    "PKG_CONFIG_PATH",
)


def _runtime_library_variable(system: str) -> str:
    return "DYLD_LIBRARY_PATH" if system == "darwin" else "LD_LIBRARY_PATH"


@dataclass(frozen=True, slots=True)
class PathEntry:
    """A directory appended to one search-path variable after the toolchains."""

    variable: str
    path: str

    def __post_init__(self) -> None:
        if self.variable not in PATH_VARIABLES:
            allowed = ", ".join(PATH_VARIABLES)
            raise ValueError(f"Search path variable '{self.variable}' is not one of: {allowed}")


@dataclass(frozen=True, slots=True)
class EnvironmentContext:
    purpose: str
    toolchains: tuple = ()
    search_paths: Mapping[str, tuple[str, ...]] = field(default_factory=lambda: MappingProxyType({}))
    variables: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def path_entries(self) -> tuple[str, ...]:
        return self.search_paths.get("PATH", ())

    def toolchain(self, name: str):
        for resolved in self.toolchains:
            if resolved.name == name:
                return resolved
        return None

    def which(self, executable: str) -> Path | None:
        """First-match lookup along the composed ``PATH``."""
        for directory in self.path_entries:
            candidate = Path(directory) / executable
            if candidate.is_file() and os.access(candidate, os.X_OK):
                return candidate
        return None

    def to_process_env(self) -> Dict[str, str]:
        return dict(self.variables)

    def with_variables(self, extra: Mapping[str, str]) -> "EnvironmentContext":
        merged = dict(self.variables)
        merged.update({str(key): str(value) for key, value in extra.items()})
        return replace(self, variables=MappingProxyType(merged))


class EnvironmentMaterializer:
    """Builds :class:`EnvironmentContext` values; never touches ``os.environ``."""

    def __init__(self, *, state_dir: Path | None = None, system: str | None = None) -> None:
        self._state_dir = state_dir
        self._system = (system or platform.system()).lower()

    def materialize(
        self,
        toolchains: Sequence,
        extras: Iterable[PathEntry] = (),
        *,
        purpose: str = BUILD,
        variables: Mapping[str, str] | None = None,
    ) -> EnvironmentContext:
        if purpose not in {BUILD, SHELL}:
            raise ValueError(f"Unknown environment purpose '{purpose}'")

        runtime_lib = _runtime_library_variable(self._system)
        layers: Dict[str, List[str]] = {name: [] for name in PATH_VARIABLES}

        def add(variable: str, paths: Iterable[Path | str]) -> None:
            bucket = layers[variable]
            for path in paths:
                text = str(path)
                if text not in bucket:
                    bucket.append(text)

        exported: Dict[str, str] = {}
        for resolved in toolchains:
            add("PATH", resolved.bin_paths)
            add("LIBRARY_PATH", resolved.lib_paths)
            add(runtime_lib, resolved.lib_paths)
            add("C_INCLUDE_PATH", resolved.include_paths)
            add("CPLUS_INCLUDE_PATH", resolved.include_paths)
            add("PKG_CONFIG_PATH", resolved.pkgconfig_paths)
            for key, value in resolved.exported_environment().items():
                exported.setdefault(key, value)

        for entry in extras:
            add(entry.variable, [entry.path])

        search_paths = {name: tuple(values) for name, values in layers.items() if values}
        composed: Dict[str, str] = {name: os.pathsep.join(values) for name, values in search_paths.items()}
        composed.update(exported)

        if purpose == BUILD:
            composed.update(self._hermetic_defaults())

        for key, value in (variables or {}).items():
            composed[str(key)] = str(value)

        return EnvironmentContext(
            purpose=purpose,
            toolchains=tuple(toolchains),
            search_paths=MappingProxyType(search_paths),
            variables=MappingProxyType(composed),
        )

    def _hermetic_defaults(self) -> Dict[str, str]:
        defaults = {
            "SOURCE_DATE_EPOCH": SOURCE_DATE_EPOCH,
            "TZ": "UTC",
            "LC_ALL": "C",
        }
        if self._state_dir is not None:
            home = self._state_dir / "home"
            defaults["HOME"] = str(home)
            defaults["npm_config_cache"] = str(home / ".npm")
        return defaults


def _template_context(toolchains: Sequence, extra: Mapping[str, Any]) -> Dict[str, Any]:
    context: Dict[str, Any] = dict(extra)
    context["toolchains"] = {
        resolved.name: {"path": str(resolved.store_path), "version": resolved.spec.version}
        for resolved in toolchains
    }
    return context


def render_variables(
    variables: Mapping[str, str],
    toolchains: Sequence,
    *,
    extra_context: Mapping[str, Any] | None = None,
    console: Console | None = None,
) -> Dict[str, str]:
    """Resolve ``{{toolchains.<name>.path}}`` style values; drop ones naming absent toolchains."""

    present = {resolved.name for resolved in toolchains}
    resolver = TemplateResolver(_template_context(toolchains, extra_context or {}))
    rendered: Dict[str, str] = {}
    for key, value in variables.items():
        absent = sorted(
            path.split(".")[1]
            for path in extract_placeholders(value)
            if path.startswith("toolchains.") and path.split(".")[1] not in present
        )
        if absent:
            if console is not None:
                console.debug(f"Skipping {key}: toolchain(s) {', '.join(absent)} not in this environment")
            continue
        rendered[key] = str(resolver.resolve(value))
    return rendered


__all__ = [
    "BUILD",
    "EnvironmentContext",
    "EnvironmentMaterializer",
    "PATH_VARIABLES",
    "PathEntry",
    "SHELL",
    "SOURCE_DATE_EPOCH",
    "render_variables",
]
