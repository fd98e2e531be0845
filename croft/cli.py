"""Command line interface for croft."""
from __future__ import annotations

from argparse import ArgumentParser, Namespace
from pathlib import Path
from typing import Iterable, List
import json
import sys

import yaml

from core.command_runner import RecordingCommandRunner, SubprocessCommandRunner

from .build import BuildOptions, BuildOrchestrator, BuildPlan
from .config_loader import WorkspaceConfig
from .console import Console
from .environment import EnvironmentMaterializer
from .errors import EXIT_CANCELLED, EXIT_CONFIG, CroftError
from .shells import ShellProfileProvider
from .store import ToolchainStore, default_store_root
from .toolchains import ToolchainResolver


def _make_runner(dry_run: bool) -> SubprocessCommandRunner | RecordingCommandRunner:
    return RecordingCommandRunner() if dry_run else SubprocessCommandRunner()


def _emit_dry_run_output(runner: RecordingCommandRunner, *, workspace: Path) -> None:
    for line in runner.iter_formatted(workspace=workspace):
        print(line)


def _console_level(args: Namespace) -> str | None:
    if getattr(args, "quiet", False):
        return "error"
    if getattr(args, "verbose", False):
        return "debug"
    return None


def _load_config(workspace: Path) -> WorkspaceConfig:
    return WorkspaceConfig.from_directory(workspace)


def _make_console(args: Namespace, config: WorkspaceConfig, *, dry_run: bool = False) -> Console:
    return Console.from_environment(
        override=_console_level(args),
        default=config.global_config.log_level,
        dry_run=dry_run,
    )


def _make_resolver(config: WorkspaceConfig, console: Console) -> ToolchainResolver:
    # Extraction must happen even for dry runs; only external tools are recorded.
    store_console = Console(console.level_name)
    store = ToolchainStore(config.store.root or default_store_root(), console=store_console)
    return ToolchainResolver(store, console=store_console, retries=config.store.fetch_retries)


def _parse_arguments(argv: Iterable[str]) -> Namespace:
    parser = ArgumentParser(prog="croft", description="Reproducible Rust + Node.js workspace builds and shells")
    parser.add_argument(
        "-C",
        "--workspace",
        default=None,
        metavar="PATH",
        help="Workspace root containing croft.toml (defaults to the current directory)",
    )
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("-v", "--verbose", action="store_true", help="Enable debug output")
    verbosity.add_argument("-q", "--quiet", action="store_true", help="Only print errors")
    subparsers = parser.add_subparsers(dest="command", required=True)

    build_parser = subparsers.add_parser("build", help="Build the workspace and publish the output prefix")
    build_parser.add_argument("-n", "--dry-run", action="store_true", help="Print commands without executing them")
    build_parser.add_argument(
        "--wait",
        type=float,
        default=None,
        metavar="SECONDS",
        help="Wait up to SECONDS for another build holding the workspace lock",
    )
    build_parser.add_argument("-o", "--output", default=None, metavar="DIR", help="Override the output directory")
    build_parser.add_argument("--show-plan", action="store_true", help="Print the resolved build plan as JSON")

    shell_parser = subparsers.add_parser("shell", help="Enter a development shell")
    shell_parser.add_argument("profile", nargs="?", default="default", help="Shell profile name")
    shell_parser.add_argument("--no-greeting", action="store_true", help="Skip the banner and version probes")

    resolve_parser = subparsers.add_parser("resolve", help="Resolve and fetch every declared toolchain")
    resolve_parser.add_argument("--json", action="store_true", help="Emit resolved toolchains as JSON")

    subparsers.add_parser("list-shells", help="List available shell profiles")

    return parser.parse_args(list(argv))


def main(argv: Iterable[str] | None = None) -> int:
    args = _parse_arguments(sys.argv[1:] if argv is None else argv)
    workspace = Path(args.workspace).resolve() if args.workspace else Path.cwd()

    try:
        config = _load_config(workspace)
    except CroftError as exc:
        print(f"Error: {exc}")
        return exc.exit_code
    except (OSError, TypeError, ValueError, yaml.YAMLError) as exc:
        print(f"Error: {exc}")
        return EXIT_CONFIG

    handlers = {
        "build": _handle_build,
        "shell": _handle_shell,
        "resolve": _handle_resolve,
        "list-shells": _handle_list_shells,
    }
    handler = handlers.get(args.command)
    if handler is None:
        raise ValueError(f"Unknown command: {args.command}")
    try:
        return handler(args, config)
    except CroftError as exc:
        print(f"Error: {exc}")
        return exc.exit_code
    except (TypeError, ValueError) as exc:
        print(f"Error: {exc}")
        return EXIT_CONFIG
    except KeyboardInterrupt:
        print("Error: interrupted")
        return EXIT_CANCELLED


def _print_plan(plan: BuildPlan) -> None:
    print(BuildOrchestrator.serialize_plan(plan))


def _handle_build(args: Namespace, config: WorkspaceConfig) -> int:
    console = _make_console(args, config, dry_run=args.dry_run)
    runner = _make_runner(args.dry_run)
    orchestrator = BuildOrchestrator(
        config=config,
        resolver=_make_resolver(config, console),
        command_runner=runner,
        console=console,
    )
    options = BuildOptions(
        dry_run=args.dry_run,
        wait=args.wait,
        output_dir=Path(args.output) if args.output else None,
        show_plan=_print_plan if args.show_plan else None,
    )
    artifacts = orchestrator.build(options)

    if isinstance(runner, RecordingCommandRunner):
        _emit_dry_run_output(runner, workspace=config.root)
        return 0

    for path in artifacts.binaries:
        console.say(str(path))
    for path in artifacts.libraries:
        console.say(str(path))
    return 0


def _make_shell_provider(config: WorkspaceConfig, console: Console) -> ShellProfileProvider:
    return ShellProfileProvider(
        profiles=config.shells,
        toolchains=config.toolchains,
        resolver=_make_resolver(config, console),
        materializer=EnvironmentMaterializer(state_dir=config.state_dir),
        console=console,
        runner=SubprocessCommandRunner(),
        variables=config.environment,
        workspace=config.root,
        workers=config.store.workers,
    )


def _handle_shell(args: Namespace, config: WorkspaceConfig) -> int:
    console = _make_console(args, config)
    provider = _make_shell_provider(config, console)
    shell = provider.provision(args.profile)
    if not args.no_greeting:
        shell.greet()
    return shell.enter()


def _handle_resolve(args: Namespace, config: WorkspaceConfig) -> int:
    console = _make_console(args, config)
    resolver = _make_resolver(config, console)
    resolved = resolver.resolve_all(config.build_toolchains(), workers=config.store.workers)
    if args.json:
        payload = {item.name: {**item.to_mapping(), "digest": item.digest()} for item in resolved}
        print(json.dumps(payload, indent=2, sort_keys=True))
        return 0

    rows: List[tuple[str, str, str]] = [(item.name, item.spec.version, str(item.store_path)) for item in resolved]
    if not rows:
        print("No toolchains declared")
        return 0
    widths = [max(len(row[index]) for row in rows) for index in range(2)]
    for name, version, path in rows:
        print(f"{name.ljust(widths[0])}  {version.ljust(widths[1])}  {path}")
    return 0


def _handle_list_shells(args: Namespace, config: WorkspaceConfig) -> int:
    for name in sorted(config.shells):
        profile = config.shells[name]
        missing = [tool for tool in profile.toolchains if tool not in config.toolchains]
        status = f"  (needs: {', '.join(missing)})" if missing else ""
        print(f"{name}: {', '.join(profile.toolchains)}{status}")
    return 0


__all__ = ["main"]
