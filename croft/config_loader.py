"""Loading and validation of the workspace ``croft.toml``."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Sequence
import os

from core.config_loader import find_config_file, load_config_file, merge_mappings, normalize_string_list

from .artifacts import MANAGED, NATIVE, ArtifactRule, LauncherSpec
from .console import Console
from .shells import BUILTIN_PROFILES, ShellProfile
from .toolchains import ToolchainSpec


CONFIG_STEM = "croft"
RUNTIME_MODE_ENV_VAR = "CROFT_RUNTIME_MODE"
RUNTIME_MODES = ("development", "production")

PHASE_NAMES = (
    "lockfile-check",
    "managed-install",
    "managed-build",
    "native-build",
    "install",
)

DEFAULT_ARTIFACTS = (
    ArtifactRule(pattern="create-farm", destination="bin", source=NATIVE, executable=True, mandatory=True),
    ArtifactRule(pattern="*.so|*.dylib|*.node", destination="lib", source=NATIVE, executable=True, name="native libraries"),
    ArtifactRule(pattern="packages/cli", destination="lib/farm", source=MANAGED, name="farm cli package"),
)

DEFAULT_LAUNCHERS = (
    LauncherSpec(name="farm", interpreter="node:node", entry="lib/farm/bin/farm.js"),
)

DEFAULT_ENVIRONMENT = {"RUST_LOG": "info"}


def _section(data: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = data.get(key, {})
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise TypeError(f"[{key}] must be a table")
    return value


def _reject_unknown(section: Mapping[str, Any], allowed: set[str], *, name: str) -> None:
    unknown = {str(key) for key in section if str(key) not in allowed}
    if unknown:
        raise ValueError(f"[{name}] contains unknown keys: {', '.join(sorted(unknown))}")


def _table_array(data: Mapping[str, Any], key: str) -> List[Mapping[str, Any]] | None:
    if key not in data:
        return None
    value = data.get(key)
    if not isinstance(value, Sequence) or isinstance(value, (str, bytes)):
        raise TypeError(f"[[{key}]] must be an array of tables")
    return list(value)


def runtime_mode(env: Mapping[str, str] | None = None) -> str:
    source = os.environ if env is None else env
    mode = source.get(RUNTIME_MODE_ENV_VAR, "").strip().lower() or "development"
    if mode not in RUNTIME_MODES:
        raise ValueError(f"{RUNTIME_MODE_ENV_VAR} must be one of: {', '.join(RUNTIME_MODES)}")
    return mode


USER_SECTIONS = {"global", "store"}


def user_config_file(env: Mapping[str, str] | None = None) -> Path | None:
    """Per-user settings (``$XDG_CONFIG_HOME/croft/config.toml``); only [global] and [store]."""

    source = os.environ if env is None else env
    base = source.get("XDG_CONFIG_HOME")
    if not base:
        home = source.get("HOME")
        if not home:
            return None
        base = str(Path(home) / ".config")
    directory = Path(base).expanduser() / CONFIG_STEM
    if not directory.is_dir():
        return None
    return find_config_file(directory, "config")


@dataclass(slots=True)
class GlobalConfig:
    log_level: str = "info"

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "GlobalConfig":
        section = _section(data, "global")
        level = str(section.get("log_level", "info")).strip().lower()
        if level not in Console.LEVELS:
            raise ValueError(f"global.log_level must be one of: {', '.join(Console.LEVELS)}")
        return cls(log_level=level)


@dataclass(slots=True)
class ProjectSettings:
    name: str = "farm"
    version: str = "0.0.0"
    output_dir: str = "result"
    state_dir: str = ".croft"

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ProjectSettings":
        section = _section(data, "project")
        _reject_unknown(section, {"name", "version", "output_dir", "state_dir"}, name="project")
        return cls(
            name=str(section.get("name", "farm")),
            version=str(section.get("version", "0.0.0")),
            output_dir=str(section.get("output_dir", "result")),
            state_dir=str(section.get("state_dir", ".croft")),
        )


@dataclass(slots=True)
class StoreSettings:
    root: Path | None = None
    fetch_retries: int = 2
    workers: int = 4

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], *, base_dir: Path) -> "StoreSettings":
        section = _section(data, "store")
        _reject_unknown(section, {"root", "fetch_retries", "workers"}, name="store")
        root = section.get("root")
        root_path = None
        if root:
            root_path = Path(str(root)).expanduser()
            if not root_path.is_absolute():
                root_path = base_dir / root_path
        retries = int(section.get("fetch_retries", 2))
        workers = int(section.get("workers", 4))
        if retries < 0 or workers < 1:
            raise ValueError("store.fetch_retries must be >= 0 and store.workers >= 1")
        return cls(root=root_path, fetch_retries=retries, workers=workers)


@dataclass(slots=True)
class ManagedSettings:
    """JavaScript side of the workspace, driven through the package manager."""

    package_manager: str = "pnpm"
    lockfile: str = "pnpm-lock.yaml"
    build_script: str = "build"
    package_dir: str = "."
    offline: bool = False

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ManagedSettings":
        section = _section(data, "managed")
        _reject_unknown(
            section,
            {"package_manager", "lockfile", "build_script", "package_dir", "offline"},
            name="managed",
        )
        return cls(
            package_manager=str(section.get("package_manager", "pnpm")),
            lockfile=str(section.get("lockfile", "pnpm-lock.yaml")),
            build_script=str(section.get("build_script", "build")),
            package_dir=str(section.get("package_dir", ".")),
            offline=bool(section.get("offline", False)),
        )

    def install_command(self) -> List[str]:
        command = [self.package_manager, "install", "--frozen-lockfile"]
        if self.offline:
            command.append("--offline")
        return command

    def build_command(self) -> List[str]:
        return [self.package_manager, "run", self.build_script]


@dataclass(slots=True)
class NativeSettings:
    """Cargo side of the workspace; always built as one ``--workspace`` unit."""

    lockfile: str = "Cargo.lock"
    profile: str = "release"
    target_dir: str = "target"
    extra_args: List[str] = field(default_factory=list)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "NativeSettings":
        section = _section(data, "native")
        _reject_unknown(section, {"lockfile", "profile", "target_dir", "extra_args"}, name="native")
        return cls(
            lockfile=str(section.get("lockfile", "Cargo.lock")),
            profile=str(section.get("profile", "release")),
            target_dir=str(section.get("target_dir", "target")),
            extra_args=normalize_string_list(section.get("extra_args"), field_name="native.extra_args"),
        )

    def build_command(self) -> List[str]:
        command = ["cargo", "build"]
        if self.profile == "release":
            command.append("--release")
        elif self.profile != "dev":
            command.extend(["--profile", self.profile])
        command.extend(["--workspace", "--locked"])
        if self.target_dir != "target":
            command.extend(["--target-dir", self.target_dir])
        command.extend(self.extra_args)
        return command

    @property
    def output_subdir(self) -> str:
        return "debug" if self.profile == "dev" else self.profile


@dataclass(slots=True)
class PhaseHooks:
    pre_hook: str | None = None
    post_hook: str | None = None


@dataclass(slots=True)
class WorkspaceConfig:
    root: Path
    project: ProjectSettings
    store: StoreSettings
    toolchains: Dict[str, ToolchainSpec]
    managed: ManagedSettings
    native: NativeSettings
    environment: Dict[str, str]
    hooks: Dict[str, str]
    phase_hooks: Dict[str, PhaseHooks]
    artifacts: List[ArtifactRule]
    launchers: List[LauncherSpec]
    shells: Dict[str, ShellProfile]
    global_config: GlobalConfig = field(default_factory=GlobalConfig)
    source: Path | None = None

    @classmethod
    def from_directory(cls, root: Path, *, env: Mapping[str, str] | None = None) -> "WorkspaceConfig":
        """Load ``croft.toml`` from ``root`` layered over the per-user settings file."""

        root = root.resolve()
        path = find_config_file(root, CONFIG_STEM)
        if path is None:
            raise ValueError(f"No {CONFIG_STEM}.toml found in {root}")
        data: Mapping[str, Any] = load_config_file(path)
        user_path = user_config_file(env)
        if user_path is not None:
            user_data = load_config_file(user_path)
            _reject_unknown(user_data, USER_SECTIONS, name=str(user_path))
            data = merge_mappings(user_data, data)
        config = cls.from_mapping(data, root=root, env=env)
        config.source = path
        return config

    @classmethod
    def from_mapping(
        cls,
        data: Mapping[str, Any],
        *,
        root: Path,
        env: Mapping[str, str] | None = None,
    ) -> "WorkspaceConfig":
        allowed = {
            "global",
            "project",
            "store",
            "toolchains",
            "managed",
            "native",
            "environment",
            "hooks",
            "phases",
            "artifacts",
            "launchers",
            "shells",
        }
        unknown = {str(key) for key in data if str(key) not in allowed}
        if unknown:
            raise ValueError(f"Unknown configuration sections: {', '.join(sorted(unknown))}")

        toolchains: Dict[str, ToolchainSpec] = {}
        for name, entry in _section(data, "toolchains").items():
            toolchains[str(name)] = ToolchainSpec.from_mapping(str(name), entry, base_dir=root)

        environment = dict(DEFAULT_ENVIRONMENT)
        environment["NODE_ENV"] = runtime_mode(env)
        environment.update({str(key): str(value) for key, value in _section(data, "environment").items()})

        hooks = {str(key): str(value) for key, value in _section(data, "hooks").items()}
        phase_hooks: Dict[str, PhaseHooks] = {}
        for name, entry in _section(data, "phases").items():
            if name not in PHASE_NAMES:
                raise ValueError(f"Unknown phase '{name}'. Phases: {', '.join(PHASE_NAMES)}")
            if not isinstance(entry, Mapping):
                raise TypeError(f"[phases.{name}] must be a table")
            _reject_unknown(entry, {"pre_hook", "post_hook"}, name=f"phases.{name}")
            phase_hooks[str(name)] = PhaseHooks(
                pre_hook=str(entry["pre_hook"]) if entry.get("pre_hook") else None,
                post_hook=str(entry["post_hook"]) if entry.get("post_hook") else None,
            )

        raw_artifacts = _table_array(data, "artifacts")
        artifacts = (
            [ArtifactRule.from_mapping(item) for item in raw_artifacts]
            if raw_artifacts is not None
            else list(DEFAULT_ARTIFACTS)
        )
        raw_launchers = _table_array(data, "launchers")
        launchers = (
            [LauncherSpec.from_mapping(item) for item in raw_launchers]
            if raw_launchers is not None
            else list(DEFAULT_LAUNCHERS)
        )
        for launcher in launchers:
            if launcher.toolchain not in toolchains:
                raise ValueError(
                    f"Launcher '{launcher.name}' references undeclared toolchain '{launcher.toolchain}'",
                )

        shells: Dict[str, ShellProfile] = dict(BUILTIN_PROFILES)
        for name, entry in _section(data, "shells").items():
            shells[str(name)] = ShellProfile.from_mapping(str(name), entry, base=BUILTIN_PROFILES.get(str(name)))

        return cls(
            root=root,
            project=ProjectSettings.from_mapping(data),
            store=StoreSettings.from_mapping(data, base_dir=root),
            toolchains=toolchains,
            managed=ManagedSettings.from_mapping(data),
            native=NativeSettings.from_mapping(data),
            environment=environment,
            hooks=hooks,
            phase_hooks=phase_hooks,
            artifacts=artifacts,
            launchers=launchers,
            shells=shells,
            global_config=GlobalConfig.from_mapping(data),
        )

    @property
    def state_dir(self) -> Path:
        return self.root / self.project.state_dir

    @property
    def output_dir(self) -> Path:
        return self.root / self.project.output_dir

    @property
    def native_output_dir(self) -> Path:
        return self.root / self.native.target_dir / self.native.output_subdir

    @property
    def managed_dir(self) -> Path:
        return self.root / self.managed.package_dir

    def build_toolchains(self) -> List[ToolchainSpec]:
        """Toolchains the build needs, in declaration order."""
        return list(self.toolchains.values())


__all__ = [
    "CONFIG_STEM",
    "DEFAULT_ARTIFACTS",
    "DEFAULT_LAUNCHERS",
    "GlobalConfig",
    "ManagedSettings",
    "NativeSettings",
    "PHASE_NAMES",
    "PhaseHooks",
    "ProjectSettings",
    "StoreSettings",
    "WorkspaceConfig",
    "runtime_mode",
    "user_config_file",
]
