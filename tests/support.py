"""Shared fixtures for building fake toolchains and workspaces in tests."""
from __future__ import annotations

from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, Sequence
import hashlib
import io
import json
import tarfile
import textwrap

import zstandard

from core.command_runner import CommandError, CommandResult, RecordingCommandRunner
from croft.toolchains import ResolvedToolchain, ToolchainKind, ToolchainSpec, scan_entry_points


def write_executable(path: Path, text: str = "#!/bin/sh\nexit 0\n") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    path.chmod(0o755)
    return path


def make_tar_zst(path: Path, top: str, files: Mapping[str, tuple[bytes, int]]) -> str:
    """Write a ``.tar.zst`` with every member under ``top/`` and return its sha256."""

    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as archive:
        for name, (content, mode) in sorted(files.items()):
            info = tarfile.TarInfo(f"{top}/{name}")
            info.size = len(content)
            info.mode = mode
            info.mtime = 0
            archive.addfile(info, io.BytesIO(content))
    payload = zstandard.ZstdCompressor().compress(buffer.getvalue())
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(payload)
    return hashlib.sha256(payload).hexdigest()


def make_resolved(root: Path, name: str, executables: Iterable[str], *, kind: ToolchainKind = ToolchainKind.UTILITY) -> ResolvedToolchain:
    store_path = root / f"{'0' * 32}-{name}-1.0.0"
    for executable in executables:
        write_executable(store_path / "bin" / executable, f"#!/bin/sh\necho {executable} 1.0.0\n")
    spec = ToolchainSpec(name=name, version="1.0.0", kind=kind, hashes=(("*", "0" * 64),), sources=(("*", "file:///dev/null"),))
    return ResolvedToolchain(
        spec=spec,
        store_path=store_path,
        content_hash="0" * 64,
        entry_points=scan_entry_points(store_path, spec.bin_dirs),
    )


class StaticResolver:
    """Stand-in for ToolchainResolver handing out pre-built store entries."""

    def __init__(self, toolchains: Sequence[ResolvedToolchain]) -> None:
        self._by_name = {resolved.name: resolved for resolved in toolchains}
        self.requested: List[str] = []

    def resolve(self, spec: ToolchainSpec) -> ResolvedToolchain:
        self.requested.append(spec.name)
        return self._by_name[spec.name]

    def resolve_all(self, specs: Sequence[ToolchainSpec], *, workers: int = 1) -> tuple[ResolvedToolchain, ...]:
        return tuple(self.resolve(spec) for spec in specs)


Effect = Callable[[Path | None], None]


class ScriptedCommandRunner(RecordingCommandRunner):
    """Records commands and applies per-tool side effects or failures."""

    def __init__(self, effects: Mapping[str, Effect] | None = None, failures: Mapping[str, int] | None = None) -> None:
        super().__init__()
        self.effects: Dict[str, Effect] = dict(effects or {})
        self.failures: Dict[str, int] = dict(failures or {})

    @staticmethod
    def key(command: Sequence[str]) -> str:
        return f"{Path(command[0]).name} {command[1]}" if len(command) > 1 else Path(command[0]).name

    def run(self, command, *, cwd=None, env=None, check=True, note=None, stream=False, inherit_env=True):
        result = super().run(command, cwd=cwd, env=env, check=check, note=note, stream=stream, inherit_env=inherit_env)
        key = self.key(command)
        if key in self.failures:
            failed = CommandResult(command=command, returncode=self.failures[key], stdout="", stderr=f"{key} failed")
            if check:
                raise CommandError(failed)
            return failed
        effect = self.effects.get(key)
        if effect is not None:
            effect(Path(cwd) if cwd else None)
        return result


PACKAGE_JSON = {
    "name": "farm-monorepo",
    "private": True,
    "devDependencies": {"typescript": "^5.4.0"},
}

PNPM_LOCK = textwrap.dedent(
    """
    lockfileVersion: '9.0'
    importers:
      .:
        devDependencies:
          typescript:
            specifier: ^5.4.0
            version: 5.4.5
      packages/cli:
        dependencies:
          cac:
            specifier: ^6.7.14
            version: 6.7.14
    """
)

CLI_PACKAGE_JSON = {
    "name": "@farmfe/cli",
    "bin": {"farm": "bin/farm.js"},
    "dependencies": {"cac": "^6.7.14"},
}

CARGO_TOML = textwrap.dedent(
    """
    [workspace]
    members = ["crates/*"]
    """
)

CRATE_TOML = textwrap.dedent(
    """
    [package]
    name = "create-farm"
    version = "0.0.0"

    [dependencies]
    anyhow = "1"
    """
)

CARGO_LOCK = textwrap.dedent(
    """
    version = 3

    [[package]]
    name = "anyhow"
    version = "1.0.86"

    [[package]]
    name = "create-farm"
    version = "0.0.0"
    """
)

CROFT_TOML = textwrap.dedent(
    """
    [project]
    name = "farm"

    [toolchains.rust]
    kind = "compiler"
    version = "1.80.0"
    sha256 = "0000000000000000000000000000000000000000000000000000000000000000"
    source = "file:///dev/null"

    [toolchains.node]
    kind = "runtime"
    version = "22.11.0"
    sha256 = "0000000000000000000000000000000000000000000000000000000000000000"
    source = "file:///dev/null"

    [toolchains.pnpm]
    kind = "package-manager"
    version = "9.12.3"
    sha256 = "0000000000000000000000000000000000000000000000000000000000000000"
    source = "file:///dev/null"
    """
)


def make_workspace(root: Path, *, config: str = CROFT_TOML) -> Path:
    """Lay out a minimal Farm-shaped workspace whose lockfiles match its manifests."""

    root.mkdir(parents=True, exist_ok=True)
    (root / "croft.toml").write_text(config, encoding="utf-8")
    (root / "package.json").write_text(json.dumps(PACKAGE_JSON, indent=2), encoding="utf-8")
    (root / "pnpm-workspace.yaml").write_text("packages:\n  - packages/*\n", encoding="utf-8")
    (root / "pnpm-lock.yaml").write_text(PNPM_LOCK, encoding="utf-8")
    cli = root / "packages" / "cli"
    cli.mkdir(parents=True)
    (cli / "package.json").write_text(json.dumps(CLI_PACKAGE_JSON, indent=2), encoding="utf-8")
    (root / "Cargo.toml").write_text(CARGO_TOML, encoding="utf-8")
    crate = root / "crates" / "create-farm"
    crate.mkdir(parents=True)
    (crate / "Cargo.toml").write_text(CRATE_TOML, encoding="utf-8")
    (root / "Cargo.lock").write_text(CARGO_LOCK, encoding="utf-8")
    return root


def relocate_managed_tree(root: Path, package_dir: str) -> Path:
    """Move the pnpm side of a workspace into ``root/package_dir`` and return it."""

    target = root / package_dir
    target.mkdir(parents=True, exist_ok=True)
    for name in ("package.json", "pnpm-workspace.yaml", "pnpm-lock.yaml", "packages"):
        (root / name).rename(target / name)
    return target


def farm_toolchains(store: Path) -> List[ResolvedToolchain]:
    return [
        make_resolved(store, "rust", ["rustc", "cargo"], kind=ToolchainKind.COMPILER),
        make_resolved(store, "node", ["node"], kind=ToolchainKind.RUNTIME),
        make_resolved(store, "pnpm", ["pnpm"], kind=ToolchainKind.PACKAGE_MANAGER),
    ]


def native_build_effect(root: Path, *, libraries: Sequence[str] = ("libfarm.so",), binary: bool = True) -> Effect:
    """Simulate ``cargo build --release`` dropping outputs into target/release."""

    def effect(_cwd: Path | None) -> None:
        release = root / "target" / "release"
        release.mkdir(parents=True, exist_ok=True)
        if binary:
            write_executable(release / "create-farm")
        for library in libraries:
            (release / library).write_bytes(b"\x7fELF")

    return effect


def managed_build_effect(root: Path) -> Effect:
    """Simulate ``pnpm run build`` producing the CLI entry point."""

    def effect(_cwd: Path | None) -> None:
        entry = root / "packages" / "cli" / "bin" / "farm.js"
        entry.parent.mkdir(parents=True, exist_ok=True)
        entry.write_text("#!/usr/bin/env node\nconsole.log('farm')\n", encoding="utf-8")

    return effect
