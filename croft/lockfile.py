"""Read-only drift detection between declared dependencies and lockfiles.

Neither lockfile is ever rewritten here: a mismatch is reported and the build
stops before any package manager or compiler runs.
"""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping
import json
import tomllib

import yaml

from .errors import LockfileDriftError


DEPENDENCY_SECTIONS = ("dependencies", "devDependencies", "optionalDependencies")
CARGO_DEPENDENCY_SECTIONS = ("dependencies", "dev-dependencies", "build-dependencies")


def _read_json(path: Path) -> Mapping[str, Any]:
    with path.open("r", encoding="utf-8") as handle:
        data = json.load(handle)
    if not isinstance(data, Mapping):
        raise TypeError(f"{path} must contain a JSON object")
    return data


def _read_toml(path: Path) -> Mapping[str, Any]:
    with path.open("rb") as handle:
        return tomllib.load(handle)


def declared_dependencies(manifest: Mapping[str, Any]) -> Dict[str, str]:
    """Flatten ``package.json`` dependency sections into ``{name: specifier}``."""

    declared: Dict[str, str] = {}
    for section in DEPENDENCY_SECTIONS:
        entries = manifest.get(section)
        if isinstance(entries, Mapping):
            for name, specifier in entries.items():
                declared[str(name)] = str(specifier)
    return declared


def _locked_importer(entry: Mapping[str, Any]) -> Dict[str, str]:
    locked: Dict[str, str] = {}
    for section in DEPENDENCY_SECTIONS:
        entries = entry.get(section)
        if not isinstance(entries, Mapping):
            continue
        for name, value in entries.items():
            if isinstance(value, Mapping):
                locked[str(name)] = str(value.get("specifier", ""))
            else:
                locked[str(name)] = ""
    specifiers = entry.get("specifiers")
    if isinstance(specifiers, Mapping):
        for name, specifier in specifiers.items():
            locked[str(name)] = str(specifier)
    return locked


def locked_importers(lock: Mapping[str, Any]) -> Dict[str, Dict[str, str]]:
    """Return ``{importer path: {name: specifier}}`` for pnpm lockfile v5 through v9."""

    importers = lock.get("importers")
    if isinstance(importers, Mapping):
        return {
            str(path): _locked_importer(entry) if isinstance(entry, Mapping) else {}
            for path, entry in importers.items()
        }
    return {".": _locked_importer(lock)}


def workspace_packages(workspace: Path) -> List[str]:
    """Importer paths declared by ``pnpm-workspace.yaml`` plus the root."""

    paths = ["."]
    manifest = workspace / "pnpm-workspace.yaml"
    if not manifest.is_file():
        return paths
    with manifest.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    patterns = data.get("packages", []) if isinstance(data, Mapping) else []
    excluded: set[str] = set()
    included: List[str] = []
    for raw in patterns:
        pattern = str(raw).strip()
        negated = pattern.startswith("!")
        pattern = pattern.lstrip("!").rstrip("/")
        for match in sorted(workspace.glob(pattern)):
            if not (match / "package.json").is_file():
                continue
            relative = match.relative_to(workspace).as_posix()
            if negated:
                excluded.add(relative)
            else:
                included.append(relative)
    for relative in included:
        if relative not in excluded and relative not in paths:
            paths.append(relative)
    return paths


def detect_pnpm_drift(workspace: Path, lockfile: str = "pnpm-lock.yaml") -> List[str]:
    lock_path = workspace / lockfile
    if not lock_path.is_file():
        return [f"{lockfile} is missing"]
    try:
        with lock_path.open("r", encoding="utf-8") as handle:
            lock = yaml.safe_load(handle) or {}
    except yaml.YAMLError as exc:
        return [f"{lockfile} cannot be parsed: {exc}"]
    if not isinstance(lock, Mapping):
        return [f"{lockfile} is not a mapping"]

    drift: List[str] = []
    locked = locked_importers(lock)
    for importer in workspace_packages(workspace):
        manifest_path = workspace / importer / "package.json"
        if not manifest_path.is_file():
            continue
        manifest = _read_json(manifest_path)
        declared = declared_dependencies(manifest)
        if importer not in locked:
            if declared:
                drift.append(f"{importer}: importer not present in {lockfile}")
            continue
        drift.extend(_compare(importer, declared, locked[importer]))

    root_manifest = workspace / "package.json"
    if root_manifest.is_file():
        pnpm_section = _read_json(root_manifest).get("pnpm")
        declared_overrides = pnpm_section.get("overrides", {}) if isinstance(pnpm_section, Mapping) else {}
        locked_overrides = lock.get("overrides") or {}
        if dict(declared_overrides) != dict(locked_overrides):
            drift.append("pnpm.overrides differ from lockfile overrides")
    return drift


def _compare(importer: str, declared: Mapping[str, str], locked: Mapping[str, str]) -> List[str]:
    drift: List[str] = []
    for name in sorted(set(declared) | set(locked)):
        if name not in locked:
            drift.append(f"{importer}: {name}@{declared[name]} declared but not locked")
        elif name not in declared:
            drift.append(f"{importer}: {name} locked but no longer declared")
        elif locked[name] and locked[name] != declared[name]:
            drift.append(f"{importer}: {name} declared {declared[name]!r} but locked {locked[name]!r}")
    return drift


def _cargo_members(workspace: Path, root: Mapping[str, Any]) -> List[Path]:
    members: List[Path] = []
    if isinstance(root.get("package"), Mapping):
        members.append(workspace / "Cargo.toml")
    workspace_section = root.get("workspace")
    if isinstance(workspace_section, Mapping):
        excluded = {str(item).rstrip("/") for item in workspace_section.get("exclude", [])}
        for pattern in workspace_section.get("members", []):
            for match in sorted(workspace.glob(str(pattern).rstrip("/"))):
                relative = match.relative_to(workspace).as_posix()
                if relative in excluded:
                    continue
                if (match / "Cargo.toml").is_file():
                    members.append(match / "Cargo.toml")
    return members


def _cargo_dependency_names(manifest: Mapping[str, Any]) -> Iterable[str]:
    tables: List[Mapping[str, Any]] = [manifest]
    targets = manifest.get("target")
    if isinstance(targets, Mapping):
        tables.extend(value for value in targets.values() if isinstance(value, Mapping))
    for table in tables:
        for section in CARGO_DEPENDENCY_SECTIONS:
            entries = table.get(section)
            if not isinstance(entries, Mapping):
                continue
            for key, value in entries.items():
                if isinstance(value, Mapping) and value.get("package"):
                    yield str(value["package"])
                else:
                    yield str(key)


def detect_cargo_drift(workspace: Path, lockfile: str = "Cargo.lock") -> List[str]:
    """Every workspace member and every declared crate must appear in ``Cargo.lock``."""

    root_manifest = workspace / "Cargo.toml"
    if not root_manifest.is_file():
        return []
    lock_path = workspace / lockfile
    if not lock_path.is_file():
        return [f"{lockfile} is missing"]

    try:
        lock = _read_toml(lock_path)
    except tomllib.TOMLDecodeError as exc:
        return [f"{lockfile} cannot be parsed: {exc}"]
    locked_names = {
        str(package.get("name"))
        for package in lock.get("package", [])
        if isinstance(package, Mapping)
    }
    drift: List[str] = []
    for manifest_path in _cargo_members(workspace, _read_toml(root_manifest)):
        manifest = _read_toml(manifest_path)
        member = manifest_path.parent.relative_to(workspace).as_posix()
        package = manifest.get("package")
        if isinstance(package, Mapping) and package.get("name") not in locked_names:
            drift.append(f"{member}: crate {package.get('name')} not present in {lockfile}")
        for name in sorted(set(_cargo_dependency_names(manifest))):
            if name not in locked_names:
                drift.append(f"{member}: dependency {name} not present in {lockfile}")
    return drift


@dataclass(frozen=True, slots=True)
class LockfileChecker:
    """Checks the pnpm tree under ``managed_root`` and the cargo tree under ``native_root``.

    ``native_root`` defaults to ``managed_root`` when both trees share the workspace root.
    """

    managed_root: Path
    native_root: Path | None = None
    managed_lockfile: str = "pnpm-lock.yaml"
    native_lockfile: str = "Cargo.lock"

    def check(self, *, phase: str | None = None) -> None:
        managed = detect_pnpm_drift(self.managed_root, self.managed_lockfile)
        if managed:
            raise LockfileDriftError(managed, lockfile=self.managed_lockfile, phase=phase)
        native = detect_cargo_drift(self.native_root or self.managed_root, self.native_lockfile)
        if native:
            raise LockfileDriftError(native, lockfile=self.native_lockfile, phase=phase)


__all__ = [
    "LockfileChecker",
    "declared_dependencies",
    "detect_cargo_drift",
    "detect_pnpm_drift",
    "locked_importers",
    "workspace_packages",
]
