"""Pinned toolchain declarations and their resolution into store paths."""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Sequence
import hashlib
import json
import os
import platform
import re

from core.config_loader import load_config_file, normalize_string_list
from core.template import TemplateResolver

from .console import Console
from .errors import AmbiguousSpecError, NetworkError, NotFoundError
from .store import ToolchainStore


_EXACT_VERSION = re.compile(r"^v?\d+\.\d+\.\d+(?:[-+][0-9A-Za-z.+-]+)?$")
_DATED_CHANNEL = re.compile(r"^(?:stable|beta|nightly)-\d{4}-\d{2}-\d{2}$")
_CONTENT_PIN = re.compile(r"^sha256:(?P<digest>[0-9a-f]{64})$")
_SHA256 = re.compile(r"^[0-9a-f]{64}$")
MANIFEST_PREFIX = "manifest:"
ANY_PLATFORM = "*"

_ARCH_ALIASES = {
    "amd64": "x86_64",
    "x64": "x86_64",
    "arm64": "aarch64",
}


class ToolchainKind(str, Enum):
    COMPILER = "compiler"
    PACKAGE_MANAGER = "package-manager"
    RUNTIME = "runtime"
    UTILITY = "utility"


def current_platform() -> str:
    system = platform.system().lower()
    machine = platform.machine().lower()
    return f"{system}-{_ARCH_ALIASES.get(machine, machine)}"


def is_deterministic_reference(reference: str) -> bool:
    return bool(
        _EXACT_VERSION.match(reference)
        or _DATED_CHANNEL.match(reference)
        or _CONTENT_PIN.match(reference)
    )


def _platform_table(value: Any, *, field_name: str) -> tuple[tuple[str, str], ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return ((ANY_PLATFORM, value.strip()),) if value.strip() else ()
    if isinstance(value, Mapping):
        return tuple(sorted((str(key).strip(), str(item).strip()) for key, item in value.items()))
    raise TypeError(f"{field_name} must be a string or a table keyed by '<os>-<arch>'")


def _lookup_platform(table: Sequence[tuple[str, str]], platform_key: str) -> str | None:
    values = dict(table)
    return values.get(platform_key) or values.get(ANY_PLATFORM)


def read_toolchain_manifest(path: Path) -> tuple[str, tuple[str, ...]]:
    """Return ``(channel, components)`` from a ``rust-toolchain.toml`` style manifest."""

    if not path.is_file():
        raise NotFoundError(f"Toolchain manifest {path} does not exist")
    data = load_config_file(path)
    section = data.get("toolchain", data)
    if not isinstance(section, Mapping) or not section.get("channel"):
        raise AmbiguousSpecError(
            f"Toolchain manifest {path} does not declare [toolchain] channel",
        )
    channel = str(section["channel"]).strip()
    components = tuple(normalize_string_list(section.get("components"), field_name="toolchain.components"))
    return channel, components


@dataclass(frozen=True, slots=True)
class ToolchainSpec:
    name: str
    version: str
    kind: ToolchainKind
    hashes: tuple[tuple[str, str], ...] = ()
    sources: tuple[tuple[str, str], ...] = ()
    bin_dirs: tuple[str, ...] = ("bin",)
    lib_dirs: tuple[str, ...] = ()
    include_dirs: tuple[str, ...] = ()
    pkgconfig_dirs: tuple[str, ...] = ()
    components: tuple[str, ...] = ()
    environment: tuple[tuple[str, str], ...] = ()

    @classmethod
    def from_mapping(cls, name: str, data: Mapping[str, Any], *, base_dir: Path | None = None) -> "ToolchainSpec":
        if not isinstance(data, Mapping):
            raise TypeError(f"Toolchain '{name}' definition must be a mapping")

        allowed_keys = {
            "version",
            "kind",
            "sha256",
            "source",
            "bin_dirs",
            "lib_dirs",
            "include_dirs",
            "pkgconfig_dirs",
            "components",
            "environment",
        }
        unknown = {str(key) for key in data.keys() if str(key) not in allowed_keys}
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ValueError(f"Toolchain '{name}' contains unknown keys: {joined}")

        version = str(data.get("version", "")).strip()
        if not version:
            raise ValueError(f"Toolchain '{name}' must declare a version")
        raw_kind = str(data.get("kind", ToolchainKind.UTILITY.value)).strip().lower()
        try:
            kind = ToolchainKind(raw_kind)
        except ValueError as exc:
            allowed = ", ".join(item.value for item in ToolchainKind)
            raise ValueError(f"Toolchain '{name}' kind '{raw_kind}' is not one of: {allowed}") from exc

        components = tuple(normalize_string_list(data.get("components"), field_name=f"toolchains.{name}.components"))
        if version.startswith(MANIFEST_PREFIX):
            manifest_path = Path(version[len(MANIFEST_PREFIX):].strip())
            if not manifest_path.is_absolute() and base_dir is not None:
                manifest_path = base_dir / manifest_path
            version, manifest_components = read_toolchain_manifest(manifest_path)
            components = tuple(dict.fromkeys(manifest_components + components))

        environment: tuple[tuple[str, str], ...] = ()
        env_section = data.get("environment")
        if isinstance(env_section, Mapping):
            environment = tuple(sorted((str(key), str(value)) for key, value in env_section.items()))

        def dirs(key: str, default: Sequence[str] = ()) -> tuple[str, ...]:
            if key not in data:
                return tuple(default)
            return tuple(normalize_string_list(data.get(key), field_name=f"toolchains.{name}.{key}"))

        return cls(
            name=name,
            version=version,
            kind=kind,
            hashes=_platform_table(data.get("sha256"), field_name=f"toolchains.{name}.sha256"),
            sources=_platform_table(data.get("source"), field_name=f"toolchains.{name}.source"),
            bin_dirs=dirs("bin_dirs", ("bin",)),
            lib_dirs=dirs("lib_dirs"),
            include_dirs=dirs("include_dirs"),
            pkgconfig_dirs=dirs("pkgconfig_dirs"),
            components=components,
            environment=environment,
        )

    def expected_sha256(self, platform_key: str) -> str | None:
        digest = _lookup_platform(self.hashes, platform_key)
        if digest:
            return digest.lower()
        pin = _CONTENT_PIN.match(self.version)
        return pin.group("digest") if pin else None

    def source_for(self, platform_key: str) -> str | None:
        template = _lookup_platform(self.sources, platform_key)
        if not template:
            return None
        system, _, arch = platform_key.partition("-")
        return template.format(name=self.name, version=self.version.lstrip("v"), os=system, arch=arch)

    def to_mapping(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "kind": self.kind.value,
            "sha256": dict(self.hashes),
            "bin_dirs": list(self.bin_dirs),
            "lib_dirs": list(self.lib_dirs),
            "include_dirs": list(self.include_dirs),
            "pkgconfig_dirs": list(self.pkgconfig_dirs),
            "components": list(self.components),
            "environment": dict(self.environment),
        }


@dataclass(frozen=True, slots=True)
class ResolvedToolchain:
    spec: ToolchainSpec
    store_path: Path
    content_hash: str
    entry_points: tuple[tuple[str, str], ...] = field(default=())

    @property
    def name(self) -> str:
        return self.spec.name

    def _under(self, relative: Iterable[str]) -> tuple[Path, ...]:
        return tuple(self.store_path / item for item in relative)

    @property
    def bin_paths(self) -> tuple[Path, ...]:
        return self._under(self.spec.bin_dirs)

    @property
    def lib_paths(self) -> tuple[Path, ...]:
        return self._under(self.spec.lib_dirs)

    @property
    def include_paths(self) -> tuple[Path, ...]:
        return self._under(self.spec.include_dirs)

    @property
    def pkgconfig_paths(self) -> tuple[Path, ...]:
        return self._under(self.spec.pkgconfig_dirs)

    def entry(self, name: str) -> Path | None:
        value = dict(self.entry_points).get(name)
        return Path(value) if value else None

    def exported_environment(self) -> Dict[str, str]:
        """Toolchain-specific variables with ``{{path}}`` bound to the store path."""
        if not self.spec.environment:
            return {}
        resolver = TemplateResolver({"path": str(self.store_path), "version": self.spec.version})
        return {key: str(resolver.resolve(value)) for key, value in self.spec.environment}

    def to_mapping(self) -> Dict[str, Any]:
        return {
            "spec": self.spec.to_mapping(),
            "store_path": str(self.store_path),
            "content_hash": self.content_hash,
            "entry_points": dict(self.entry_points),
        }

    def digest(self) -> str:
        payload = json.dumps(self.to_mapping(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def scan_entry_points(store_path: Path, bin_dirs: Iterable[str]) -> tuple[tuple[str, str], ...]:
    found: Dict[str, str] = {}
    for relative in bin_dirs:
        directory = store_path / relative
        if not directory.is_dir():
            continue
        for candidate in sorted(directory.iterdir()):
            if candidate.name in found:
                continue
            if candidate.is_file() and os.access(candidate, os.X_OK):
                found[candidate.name] = str(candidate)
    return tuple(sorted(found.items()))


class ToolchainResolver:
    """Turns :class:`ToolchainSpec` declarations into verified store paths."""

    def __init__(
        self,
        store: ToolchainStore,
        *,
        console: Console,
        platform_key: str | None = None,
        retries: int = 0,
    ) -> None:
        self._store = store
        self._console = console
        self._platform = platform_key or current_platform()
        self._retries = max(0, retries)

    @property
    def platform_key(self) -> str:
        return self._platform

    def validate(self, spec: ToolchainSpec) -> tuple[str, str]:
        """Return ``(sha256, source)`` or raise when the toolchain is not fully pinned."""

        if not is_deterministic_reference(spec.version):
            raise AmbiguousSpecError(
                f"Toolchain '{spec.name}' version '{spec.version}' is not an exact pin",
                hint="Use an exact version (1.2.3), a dated channel (nightly-2024-05-01) or sha256:<digest>.",
            )
        sha256 = spec.expected_sha256(self._platform)
        if not sha256 or not _SHA256.match(sha256):
            raise AmbiguousSpecError(
                f"Toolchain '{spec.name}' has no valid sha256 for platform {self._platform}",
                hint="Every fetched toolchain needs a content hash to verify against.",
            )
        source = spec.source_for(self._platform)
        if not source:
            raise NotFoundError(
                f"Toolchain '{spec.name}' {spec.version} has no source for platform {self._platform}",
            )
        return sha256, source

    def resolve(self, spec: ToolchainSpec) -> ResolvedToolchain:
        sha256, source = self.validate(spec)
        attempt = 0
        while True:
            try:
                store_path = self._store.ensure(
                    name=spec.name,
                    version=spec.version,
                    sha256=sha256,
                    source=source,
                )
                break
            except NetworkError as exc:
                if attempt >= self._retries:
                    raise
                attempt += 1
                self._console.error(f"{exc.message}; retrying ({attempt}/{self._retries})")

        resolved = ResolvedToolchain(
            spec=spec,
            store_path=store_path,
            content_hash=sha256,
            entry_points=scan_entry_points(store_path, spec.bin_dirs),
        )
        self._console.debug(f"Resolved {spec.name} {spec.version} -> {store_path}")
        return resolved

    def resolve_all(self, specs: Sequence[ToolchainSpec], *, workers: int = 1) -> tuple[ResolvedToolchain, ...]:
        """Resolve ``specs`` preserving their order; independent specs may fetch in parallel."""
        if workers <= 1 or len(specs) <= 1:
            return tuple(self.resolve(spec) for spec in specs)
        with ThreadPoolExecutor(max_workers=workers) as pool:
            return tuple(pool.map(self.resolve, specs))


__all__ = [
    "ResolvedToolchain",
    "ToolchainKind",
    "ToolchainResolver",
    "ToolchainSpec",
    "current_platform",
    "is_deterministic_reference",
    "read_toolchain_manifest",
    "scan_entry_points",
]
