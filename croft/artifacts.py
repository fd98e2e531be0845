"""Collection of build outputs into the installable ``bin/`` + ``lib/`` layout."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Sequence
import os
import shlex
import shutil

from .console import Console
from .environment import SOURCE_DATE_EPOCH
from .errors import InstallError, MissingArtifactError


NATIVE = "native"
MANAGED = "managed"
EXECUTABLE_MODE = 0o755
DATA_MODE = 0o644


@dataclass(frozen=True, slots=True)
class ArtifactRule:
    """Glob ``pattern`` (``|``-separated alternatives) under the chosen source tree."""

    pattern: str
    destination: str
    source: str = NATIVE
    executable: bool = False
    mandatory: bool = False
    name: str | None = None

    def __post_init__(self) -> None:
        if self.source not in {NATIVE, MANAGED}:
            raise ValueError(f"Artifact source '{self.source}' must be '{NATIVE}' or '{MANAGED}'")
        if Path(self.destination).is_absolute() or ".." in Path(self.destination).parts:
            raise ValueError(f"Artifact destination '{self.destination}' must stay inside the output prefix")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ArtifactRule":
        if not isinstance(data, Mapping):
            raise TypeError("[[artifacts]] entries must be tables")
        allowed = {"name", "pattern", "destination", "source", "executable", "mandatory"}
        unknown = {str(key) for key in data if str(key) not in allowed}
        if unknown:
            raise ValueError(f"Artifact rule contains unknown keys: {', '.join(sorted(unknown))}")
        pattern = str(data.get("pattern", "")).strip()
        destination = str(data.get("destination", "")).strip()
        if not pattern or not destination:
            raise ValueError("Artifact rules require 'pattern' and 'destination'")
        return cls(
            pattern=pattern,
            destination=destination,
            source=str(data.get("source", NATIVE)).strip().lower(),
            executable=bool(data.get("executable", False)),
            mandatory=bool(data.get("mandatory", False)),
            name=str(data["name"]) if data.get("name") else None,
        )

    @property
    def label(self) -> str:
        return self.name or self.pattern

    @property
    def patterns(self) -> List[str]:
        return [part.strip() for part in self.pattern.split("|") if part.strip()]

    def matches(self, root: Path) -> List[Path]:
        if not root.is_dir():
            return []
        found: Dict[str, Path] = {}
        for pattern in self.patterns:
            for match in root.glob(pattern):
                found.setdefault(match.relative_to(root).as_posix(), match)
        return [found[key] for key in sorted(found)]


@dataclass(frozen=True, slots=True)
class LauncherSpec:
    """Launcher as declared: ``interpreter`` is ``<toolchain>:<entry point>``."""

    name: str
    interpreter: str
    entry: str
    mandatory: bool = False

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "LauncherSpec":
        if not isinstance(data, Mapping):
            raise TypeError("[[launchers]] entries must be tables")
        name = str(data.get("name", "")).strip()
        interpreter = str(data.get("interpreter", "")).strip()
        entry = str(data.get("entry", "")).strip()
        if not name or not interpreter or not entry:
            raise ValueError("Launchers require 'name', 'interpreter' and 'entry'")
        if ":" not in interpreter:
            raise ValueError(f"Launcher '{name}' interpreter must look like '<toolchain>:<entry point>'")
        return cls(name=name, interpreter=interpreter, entry=entry, mandatory=bool(data.get("mandatory", False)))

    @property
    def toolchain(self) -> str:
        return self.interpreter.partition(":")[0]

    @property
    def entry_point(self) -> str:
        return self.interpreter.partition(":")[2]

    def bind(self, toolchains: Sequence) -> "LauncherScript":
        for resolved in toolchains:
            if resolved.name != self.toolchain:
                continue
            path = resolved.entry(self.entry_point)
            if path is None:
                raise InstallError(
                    f"Launcher '{self.name}': toolchain '{self.toolchain}' has no entry point '{self.entry_point}'",
                )
            return LauncherScript(name=self.name, interpreter=str(path), entry=self.entry, mandatory=self.mandatory)
        raise InstallError(f"Launcher '{self.name}' references unresolved toolchain '{self.toolchain}'")


@dataclass(frozen=True, slots=True)
class LauncherScript:
    """Launcher bound to an absolute interpreter path from the store."""

    name: str
    interpreter: str
    entry: str
    mandatory: bool = False

    def render(self, prefix: Path) -> str:
        target = shlex.quote(str(prefix / self.entry))
        return f'#!/bin/sh\nexec {shlex.quote(self.interpreter)} {target} "$@"\n'


@dataclass(frozen=True, slots=True)
class InstalledLayout:
    prefix: Path
    files: tuple[str, ...] = ()
    launchers: tuple[str, ...] = ()
    skipped: tuple[str, ...] = ()

    @property
    def binaries(self) -> tuple[str, ...]:
        return tuple(item for item in self.files if item.startswith("bin/"))

    @property
    def libraries(self) -> tuple[str, ...]:
        return tuple(item for item in self.files if item.startswith("lib/") and item.count("/") == 1)


def _normalize_tree(root: Path, epoch: int) -> None:
    """Pin every mtime under ``root`` to ``epoch``; directories last so writes do not bump them."""
    for directory, dirnames, filenames in os.walk(root, topdown=False):
        for name in dirnames + filenames:
            path = os.path.join(directory, name)
            os.utime(path, (epoch, epoch), follow_symlinks=not os.path.islink(path))
        os.utime(directory, (epoch, epoch))


def _file_mode(path: Path, executable: bool) -> int:
    if executable or os.access(path, os.X_OK):
        return EXECUTABLE_MODE
    return DATA_MODE


class ArtifactCollector:
    """Copies matched outputs into ``staging_dir`` and writes launchers.

    ``prefix`` is the final published location and is baked into launcher
    scripts; nothing is written there directly.
    """

    def __init__(self, *, console: Console, epoch: int | None = None) -> None:
        self._console = console
        self._epoch = int(SOURCE_DATE_EPOCH) if epoch is None else epoch

    def install(
        self,
        native_dir: Path,
        managed_dir: Path,
        rules: Sequence[ArtifactRule],
        launchers: Sequence[LauncherScript],
        *,
        staging_dir: Path,
        prefix: Path,
    ) -> InstalledLayout:
        staging_dir.mkdir(parents=True, exist_ok=True)
        installed: Dict[str, str] = {}
        missing: List[str] = []
        skipped: List[str] = []

        for rule in rules:
            root = native_dir if rule.source == NATIVE else managed_dir
            matches = rule.matches(root)
            if not matches:
                if rule.mandatory:
                    self._console.error(f"Mandatory artifact '{rule.label}' not found under {root}")
                    missing.append(rule.label)
                else:
                    self._console.debug(f"Optional artifact '{rule.label}' matched nothing")
                    skipped.append(rule.label)
                continue
            for match in matches:
                if match.is_dir():
                    self._copy_tree(match, staging_dir / rule.destination, rule, installed, staging_dir)
                else:
                    target = staging_dir / rule.destination / match.name
                    self._copy_file(match, target, rule.executable, rule.label, installed, staging_dir)

        written: List[str] = []
        for launcher in launchers:
            if not (staging_dir / launcher.entry).is_file():
                if launcher.mandatory:
                    missing.append(f"launcher {launcher.name}")
                else:
                    self._console.debug(f"Launcher '{launcher.name}' skipped; {launcher.entry} was not installed")
                    skipped.append(f"launcher {launcher.name}")
                continue
            relative = f"bin/{launcher.name}"
            if relative in installed:
                raise InstallError(f"Launcher '{launcher.name}' collides with artifact from '{installed[relative]}'")
            target = staging_dir / relative
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(launcher.render(prefix), encoding="utf-8")
            target.chmod(EXECUTABLE_MODE)
            installed[relative] = f"launcher {launcher.name}"
            written.append(relative)

        if missing:
            raise MissingArtifactError(missing)

        _normalize_tree(staging_dir, self._epoch)
        for relative in sorted(installed):
            self._console.debug(f"installed {relative}")
        return InstalledLayout(
            prefix=prefix,
            files=tuple(sorted(installed)),
            launchers=tuple(written),
            skipped=tuple(skipped),
        )

    def _copy_file(
        self,
        source: Path,
        target: Path,
        executable: bool,
        label: str,
        installed: Dict[str, str],
        staging_dir: Path,
    ) -> None:
        relative = target.relative_to(staging_dir).as_posix()
        if relative in installed and installed[relative] != label:
            raise InstallError(
                f"Artifact '{label}' would overwrite {relative} installed by '{installed[relative]}'",
            )
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, target)
        target.chmod(_file_mode(source, executable))
        installed[relative] = label

    def _copy_tree(
        self,
        source: Path,
        destination: Path,
        rule: ArtifactRule,
        installed: Dict[str, str],
        staging_dir: Path,
    ) -> None:
        for directory, dirnames, filenames in os.walk(source):
            dirnames.sort()
            current = Path(directory)
            target_dir = destination / current.relative_to(source)
            target_dir.mkdir(parents=True, exist_ok=True)
            target_dir.chmod(EXECUTABLE_MODE)
            links = [name for name in dirnames if (current / name).is_symlink()]
            dirnames[:] = [name for name in dirnames if name not in links]
            for name in sorted(filenames + links):
                path = current / name
                target = target_dir / name
                if path.is_symlink():
                    if target.is_symlink() or target.exists():
                        target.unlink()
                    target.symlink_to(os.readlink(path))
                    installed[target.relative_to(staging_dir).as_posix()] = rule.label
                else:
                    self._copy_file(path, target, rule.executable, rule.label, installed, staging_dir)


__all__ = [
    "ArtifactCollector",
    "ArtifactRule",
    "InstalledLayout",
    "LauncherScript",
    "LauncherSpec",
    "MANAGED",
    "NATIVE",
]
