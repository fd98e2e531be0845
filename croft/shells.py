"""Named development shell profiles built from the same toolchains as the build."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Sequence
import os
import subprocess

from core.command_runner import CommandRunner
from core.config_loader import normalize_string_list

from .console import Console
from .environment import SHELL, EnvironmentContext, EnvironmentMaterializer, render_variables
from .toolchains import ToolchainResolver, ToolchainSpec


SHELL_MARKER = "CROFT_SHELL"


@dataclass(frozen=True, slots=True)
class ShellProbe:
    label: str
    argv: tuple[str, ...]

    @classmethod
    def from_value(cls, value: Any) -> "ShellProbe":
        if isinstance(value, Mapping):
            label = str(value.get("label", "")).strip()
            argv = tuple(normalize_string_list(value.get("command"), field_name="probes.command"))
        elif isinstance(value, str):
            argv = tuple(value.split())
            label = argv[0] if argv else ""
        else:
            raise TypeError("Shell probes must be strings or tables with 'label' and 'command'")
        if not argv:
            raise ValueError("Shell probes require a command")
        return cls(label=label or argv[0], argv=argv)


@dataclass(frozen=True, slots=True)
class ShellProfile:
    """``toolchains`` must be declared; ``extras`` join the shell only when declared."""

    name: str
    toolchains: tuple[str, ...]
    extras: tuple[str, ...] = ()
    greeting: tuple[str, ...] = ()
    commands: tuple[tuple[str, str], ...] = ()
    probes: tuple[ShellProbe, ...] = ()
    variables: tuple[tuple[str, str], ...] = ()
    pure: bool = False

    @classmethod
    def from_mapping(cls, name: str, data: Mapping[str, Any], *, base: "ShellProfile | None" = None) -> "ShellProfile":
        if not isinstance(data, Mapping):
            raise TypeError(f"Shell profile '{name}' must be a table")
        allowed = {"toolchains", "extras", "greeting", "commands", "probes", "environment", "pure"}
        unknown = {str(key) for key in data if str(key) not in allowed}
        if unknown:
            raise ValueError(f"Shell profile '{name}' contains unknown keys: {', '.join(sorted(unknown))}")

        def strings(key: str, fallback: Sequence[str]) -> tuple[str, ...]:
            if key not in data:
                return tuple(fallback)
            return tuple(normalize_string_list(data.get(key), field_name=f"shells.{name}.{key}"))

        toolchains = strings("toolchains", base.toolchains if base else ())
        if not toolchains:
            raise ValueError(f"Shell profile '{name}' must list at least one toolchain")

        commands = base.commands if base else ()
        if "commands" in data:
            section = data.get("commands")
            if not isinstance(section, Mapping):
                raise TypeError(f"shells.{name}.commands must be a table of command = description")
            commands = tuple((str(key), str(value)) for key, value in section.items())

        probes = base.probes if base else ()
        if "probes" in data:
            raw = data.get("probes")
            if not isinstance(raw, Sequence) or isinstance(raw, (str, bytes)):
                raise TypeError(f"shells.{name}.probes must be an array")
            probes = tuple(ShellProbe.from_value(item) for item in raw)

        variables = dict(base.variables) if base else {}
        env_section = data.get("environment")
        if isinstance(env_section, Mapping):
            variables.update({str(key): str(value) for key, value in env_section.items()})

        return cls(
            name=name,
            toolchains=toolchains,
            extras=strings("extras", base.extras if base else ()),
            greeting=strings("greeting", base.greeting if base else ()),
            commands=commands,
            probes=probes,
            variables=tuple(variables.items()),
            pure=bool(data.get("pure", base.pure if base else False)),
        )


_DEFAULT_COMMANDS = (
    ("pnpm bootstrap", "Install dependencies and build"),
    ("pnpm start", "Start development server"),
    ("pnpm start:rs", "Watch Rust changes"),
    ("pnpm test", "Run tests"),
    ("pnpm check", "Run linting"),
    ("cargo build", "Build Rust components"),
    ("cargo test", "Test Rust components"),
)

_NODE_PROBE = ShellProbe("Node.js", ("node", "--version"))
_PNPM_PROBE = ShellProbe("pnpm", ("pnpm", "--version"))
_RUST_PROBE = ShellProbe("Rust", ("rustc", "--version"))

_RUST_VARIABLES = (
    ("RUST_SRC_PATH", "{{toolchains.rust.path}}/lib/rustlib/src/rust/library"),
    ("OPENSSL_DIR", "{{toolchains.openssl.path}}"),
    ("OPENSSL_LIB_DIR", "{{toolchains.openssl.path}}/lib"),
)

BUILTIN_PROFILES: Dict[str, ShellProfile] = {
    "default": ShellProfile(
        name="default",
        toolchains=("rust", "node", "pnpm"),
        extras=(
            "pkg-config",
            "openssl",
            "typescript",
            "git",
            "cargo-watch",
            "ripgrep",
            "fd",
            "jq",
            "gcc",
            "python3",
        ),
        greeting=("🌾 Farm development environment loaded",),
        commands=_DEFAULT_COMMANDS,
        probes=(_NODE_PROBE, _PNPM_PROBE, _RUST_PROBE),
        variables=_RUST_VARIABLES,
    ),
    "rust-only": ShellProfile(
        name="rust-only",
        toolchains=("rust",),
        extras=("pkg-config", "openssl", "cargo-watch"),
        greeting=("🦀 Rust-only development environment for Farm",),
        probes=(_RUST_PROBE,),
        variables=_RUST_VARIABLES,
    ),
    "node-only": ShellProfile(
        name="node-only",
        toolchains=("node", "pnpm"),
        extras=("typescript",),
        greeting=("📦 Node.js-only development environment for Farm",),
        probes=(_NODE_PROBE, _PNPM_PROBE),
    ),
}


@dataclass(slots=True)
class ProvisionedShell:
    profile: ShellProfile
    context: EnvironmentContext
    console: Console
    runner: CommandRunner
    workspace: Path | None = None
    host_env: Mapping[str, str] = field(default_factory=lambda: dict(os.environ))

    def process_env(self) -> Dict[str, str]:
        """Context variables over the host environment; host ``PATH`` comes after the toolchains."""

        env = {} if self.profile.pure else dict(self.host_env)
        env.update(self.context.to_process_env())
        host_path = self.host_env.get("PATH", "")
        if not self.profile.pure and host_path:
            composed = env.get("PATH", "")
            env["PATH"] = os.pathsep.join(part for part in (composed, host_path) if part)
        env[SHELL_MARKER] = self.profile.name
        return env

    def greet(self) -> List[str]:
        lines: List[str] = list(self.profile.greeting)
        if self.profile.commands:
            width = max(len(command) for command, _ in self.profile.commands)
            lines.append("")
            lines.append("Available commands:")
            lines.extend(f"  {command.ljust(width)} - {description}" for command, description in self.profile.commands)
        if self.profile.probes:
            lines.append("")
            env = self.process_env()
            for probe in self.profile.probes:
                lines.append(f"{probe.label}: {self._probe(probe, env)}")
        for line in lines:
            self.console.say(line)
        return lines

    def _probe(self, probe: ShellProbe, env: Mapping[str, str]) -> str:
        executable = self.context.which(probe.argv[0])
        argv = [str(executable) if executable else probe.argv[0], *probe.argv[1:]]
        try:
            result = self.runner.run(argv, env=env, check=False, inherit_env=False, cwd=self.workspace)
        except OSError as exc:
            return f"unavailable ({exc.strerror or exc})"
        if result.returncode != 0:
            return f"unavailable (exit status {result.returncode})"
        output = (result.stdout or result.stderr).strip().splitlines()
        return output[0] if output else "unknown"

    def enter(self, *, spawn: Callable[..., int] = subprocess.call) -> int:
        env = self.process_env()
        shell = self.host_env.get("SHELL") or "/bin/sh"
        self.console.debug(f"Entering {shell} with profile '{self.profile.name}'")
        return spawn([shell], env=env, cwd=str(self.workspace) if self.workspace else None)


class ShellProfileProvider:
    """Resolves a profile's toolchains and materializes a shell-purpose environment."""

    def __init__(
        self,
        *,
        profiles: Mapping[str, ShellProfile],
        toolchains: Mapping[str, ToolchainSpec],
        resolver: ToolchainResolver,
        materializer: EnvironmentMaterializer,
        console: Console,
        runner: CommandRunner,
        variables: Mapping[str, str] | None = None,
        workspace: Path | None = None,
        workers: int = 1,
    ) -> None:
        self._profiles = dict(profiles)
        self._toolchains = dict(toolchains)
        self._resolver = resolver
        self._materializer = materializer
        self._console = console
        self._runner = runner
        self._variables = dict(variables or {})
        self._workspace = workspace
        self._workers = workers

    def names(self) -> List[str]:
        return sorted(self._profiles)

    def profile(self, name: str) -> ShellProfile:
        try:
            return self._profiles[name]
        except KeyError:
            available = ", ".join(self.names()) or "none"
            raise ValueError(f"Unknown shell profile '{name}'. Available: {available}") from None

    def specs_for(self, profile: ShellProfile) -> List[ToolchainSpec]:
        missing = [name for name in profile.toolchains if name not in self._toolchains]
        if missing:
            raise ValueError(
                f"Shell profile '{profile.name}' needs undeclared toolchain(s): {', '.join(missing)}",
            )
        names = list(dict.fromkeys(profile.toolchains + tuple(n for n in profile.extras if n in self._toolchains)))
        return [self._toolchains[name] for name in names]

    def provision(self, name: str) -> ProvisionedShell:
        profile = self.profile(name)
        resolved = self._resolver.resolve_all(self.specs_for(profile), workers=self._workers)
        merged = dict(self._variables)
        merged.update(dict(profile.variables))
        extra_context = {"workspace": str(self._workspace)} if self._workspace else {}
        variables = render_variables(merged, resolved, extra_context=extra_context, console=self._console)
        context = self._materializer.materialize(resolved, purpose=SHELL, variables=variables)
        return ProvisionedShell(
            profile=profile,
            context=context,
            console=self._console,
            runner=self._runner,
            workspace=self._workspace,
        )


__all__ = [
    "BUILTIN_PROFILES",
    "ProvisionedShell",
    "ShellProbe",
    "ShellProfile",
    "ShellProfileProvider",
]
