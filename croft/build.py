"""Cross-language build orchestration: lockfile check, pnpm, cargo, install."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Sequence
import json
import shutil
import uuid

from core.command_runner import CommandRunner
from core.template import TemplateResolver, topological_order

from .artifacts import ArtifactCollector, InstalledLayout, LauncherScript
from .config_loader import PHASE_NAMES, WorkspaceConfig
from .console import Console
from .environment import BUILD, EnvironmentContext, EnvironmentMaterializer, render_variables
from .errors import InstallError
from .lockfile import LockfileChecker, workspace_packages
from .locking import WorkspaceLock
from .phases import (
    BuildPhase,
    CallableOperation,
    CommandOperation,
    HookRegistry,
    PhaseRecord,
    PhaseSequencer,
    shell_hook,
)
from .toolchains import ResolvedToolchain, ToolchainResolver


# Each phase lists the phases it depends on. The managed -> native edge is
# fixed: cargo build scripts consume the generated JavaScript packages.
PHASE_GRAPH: Dict[str, tuple[str, ...]] = {
    "lockfile-check": (),
    "managed-install": ("lockfile-check",),
    "managed-build": ("managed-install",),
    "native-build": ("managed-build",),
    "install": ("native-build",),
}


@dataclass(slots=True)
class BuildOptions:
    dry_run: bool = False
    wait: float | None = None
    output_dir: Path | None = None
    show_plan: Callable[[BuildPlan], None] | None = None


@dataclass(slots=True)
class BuildPlan:
    run_id: str
    phases: List[BuildPhase]
    environment: EnvironmentContext
    toolchains: tuple[ResolvedToolchain, ...]
    launchers: List[LauncherScript]
    staging_dir: Path
    output_dir: Path
    hooks: HookRegistry


@dataclass(frozen=True, slots=True)
class ArtifactSet:
    prefix: Path
    layout: InstalledLayout
    toolchains: tuple[ResolvedToolchain, ...] = ()
    records: tuple[PhaseRecord, ...] = ()
    published: bool = True

    @property
    def binaries(self) -> tuple[Path, ...]:
        return tuple(self.prefix / item for item in self.layout.binaries)

    @property
    def libraries(self) -> tuple[Path, ...]:
        return tuple(self.prefix / item for item in self.layout.libraries)

    @property
    def launchers(self) -> tuple[Path, ...]:
        return tuple(self.prefix / item for item in self.layout.launchers)


def phase_order() -> List[str]:
    priority = {name: index for index, name in enumerate(PHASE_NAMES)}
    return topological_order(PHASE_GRAPH, priority=priority)


class BuildOrchestrator:
    """Drives one build of a workspace from pinned toolchains to a published prefix."""

    def __init__(
        self,
        *,
        config: WorkspaceConfig,
        resolver: ToolchainResolver,
        command_runner: CommandRunner,
        console: Console,
        materializer: EnvironmentMaterializer | None = None,
        collector: ArtifactCollector | None = None,
    ) -> None:
        self._config = config
        self._resolver = resolver
        self._command_runner = command_runner
        self._console = console
        self._materializer = materializer or EnvironmentMaterializer(state_dir=config.state_dir)
        self._collector = collector or ArtifactCollector(console=console)
        self._sequencer: PhaseSequencer | None = None
        self._layout: InstalledLayout | None = None

    def _template_context(self) -> Dict[str, Any]:
        return {
            "workspace": str(self._config.root),
            "project": {"name": self._config.project.name, "version": self._config.project.version},
        }

    def plan(self, options: BuildOptions) -> BuildPlan:
        config = self._config
        toolchains = self._resolver.resolve_all(config.build_toolchains(), workers=config.store.workers)
        variables = render_variables(
            config.environment,
            toolchains,
            extra_context=self._template_context(),
            console=self._console,
        )
        environment = self._materializer.materialize(toolchains, purpose=BUILD, variables=variables)
        launchers = [launcher.bind(toolchains) for launcher in config.launchers]

        run_id = uuid.uuid4().hex[:12]
        output_dir = (options.output_dir or config.output_dir).resolve()
        staging_dir = config.state_dir / "staging" / run_id

        resolver = TemplateResolver(
            {**self._template_context(), "toolchains": {tc.name: {"path": str(tc.store_path)} for tc in toolchains}}
        )
        hooks = HookRegistry(
            {name: shell_hook(str(resolver.resolve(command)), cwd=config.root) for name, command in config.hooks.items()}
        )

        def executable(name: str) -> str:
            found = environment.which(name)
            return str(found) if found else name

        managed_cwd = config.managed_dir
        install_argv = config.managed.install_command()
        build_argv = config.managed.build_command()
        native_argv = config.native.build_command()
        operations = {
            "lockfile-check": CallableOperation(self._check_lockfiles, tool="lockfile-check"),
            "managed-install": CommandOperation(
                argv=(executable(install_argv[0]), *install_argv[1:]),
                cwd=managed_cwd,
                tool=config.managed.package_manager,
            ),
            "managed-build": CommandOperation(
                argv=(executable(build_argv[0]), *build_argv[1:]),
                cwd=managed_cwd,
                tool=config.managed.package_manager,
            ),
            "native-build": CommandOperation(
                argv=(executable(native_argv[0]), *native_argv[1:]),
                cwd=config.root,
                tool="cargo",
            ),
            "install": CallableOperation(
                lambda env: self._install(launchers, staging_dir=staging_dir, prefix=output_dir, dry_run=options.dry_run),
                tool="install",
            ),
        }

        phases: List[BuildPhase] = []
        for ordinal, name in enumerate(phase_order()):
            hooks_for_phase = config.phase_hooks.get(name)
            phases.append(
                BuildPhase(
                    name=name,
                    ordinal=ordinal,
                    operation=operations[name],
                    pre_hook=hooks_for_phase.pre_hook if hooks_for_phase else None,
                    post_hook=hooks_for_phase.post_hook if hooks_for_phase else None,
                )
            )

        return BuildPlan(
            run_id=run_id,
            phases=phases,
            environment=environment,
            toolchains=toolchains,
            launchers=launchers,
            staging_dir=staging_dir,
            output_dir=output_dir,
            hooks=hooks,
        )

    def build(self, options: BuildOptions | None = None) -> ArtifactSet:
        options = options or BuildOptions()
        with WorkspaceLock(self._config.state_dir, wait=options.wait):
            plan = self.plan(options)
            if options.show_plan is not None:
                options.show_plan(plan)
            return self._execute(plan, options)

    def cancel(self) -> bool:
        sequencer = self._sequencer
        return sequencer.cancel() if sequencer is not None else False

    def _execute(self, plan: BuildPlan, options: BuildOptions) -> ArtifactSet:
        self._layout = None
        self._sequencer = PhaseSequencer(
            runner=self._command_runner,
            console=self._console,
            hooks=plan.hooks,
            stream=not options.dry_run,
        )
        try:
            result = self._sequencer.run(plan.phases, plan.environment)
        finally:
            self._sequencer = None

        if not result.succeeded:
            cause = result.cause
            if result.failed_phase == "install" and cause is not None and plan.staging_dir.exists():
                cause.context["staging"] = str(plan.staging_dir)
                self._console.info(f"Partially collected artifacts left in {plan.staging_dir}")
            else:
                shutil.rmtree(plan.staging_dir, ignore_errors=True)
            if result.failed_phase == "managed-install" and not options.dry_run:
                self._discard_partial_install()
            result.raise_for_failure()

        for record in result.records:
            self._console.debug(f"{record.phase}/{record.step} ({record.tool}) {record.duration:.2f}s")

        layout = self._layout or InstalledLayout(prefix=plan.output_dir)
        if options.dry_run:
            self._console.dry(f"Would publish {plan.staging_dir} to {plan.output_dir}")
            return ArtifactSet(
                prefix=plan.output_dir,
                layout=layout,
                toolchains=plan.toolchains,
                records=tuple(result.records),
                published=False,
            )

        self._publish(plan)
        self._console.info(f"Installed {len(layout.files)} file(s) into {plan.output_dir}")
        return ArtifactSet(
            prefix=plan.output_dir,
            layout=layout,
            toolchains=plan.toolchains,
            records=tuple(result.records),
        )

    def _check_lockfiles(self, env: EnvironmentContext) -> None:
        checker = LockfileChecker(
            managed_root=self._config.managed_dir,
            native_root=self._config.root,
            managed_lockfile=self._config.managed.lockfile,
            native_lockfile=self._config.native.lockfile,
        )
        checker.check(phase="lockfile-check")
        self._console.debug("Lockfiles match declared dependencies")

    def _install(
        self,
        launchers: Sequence[LauncherScript],
        *,
        staging_dir: Path,
        prefix: Path,
        dry_run: bool,
    ) -> None:
        if dry_run:
            self._console.dry(
                f"Would collect artifacts from {self._config.native_output_dir} and {self._config.managed_dir}"
            )
            return
        self._layout = self._collector.install(
            self._config.native_output_dir,
            self._config.managed_dir,
            self._config.artifacts,
            launchers,
            staging_dir=staging_dir,
            prefix=prefix,
        )

    def _discard_partial_install(self) -> None:
        for importer in workspace_packages(self._config.managed_dir):
            modules = self._config.managed_dir / importer / "node_modules"
            if modules.is_dir() and not modules.is_symlink():
                self._console.info(f"Removing partially populated {modules}")
                shutil.rmtree(modules)

    def _publish(self, plan: BuildPlan) -> None:
        """Swap the staged tree into place with renames; the previous output is removed afterwards."""

        output = plan.output_dir
        retired: Path | None = None
        try:
            output.parent.mkdir(parents=True, exist_ok=True)
            if _lexists(output):
                retired = self._config.state_dir / "retired" / plan.run_id
                retired.parent.mkdir(parents=True, exist_ok=True)
                output.rename(retired)
            plan.staging_dir.rename(output)
        except OSError as exc:
            context = {"output": str(output), "staging": str(plan.staging_dir)}
            if retired is not None and _lexists(retired) and not _lexists(output):
                try:
                    retired.rename(output)
                except OSError:
                    context["previous output"] = str(retired)
            raise InstallError(
                f"Cannot publish build output to {output}: {exc.strerror or exc}",
                hint="The output directory must be writable and on the same filesystem as the state directory.",
                context=context,
            ) from exc

        if retired is None:
            return
        if retired.is_dir() and not retired.is_symlink():
            shutil.rmtree(retired, ignore_errors=True)
        else:
            retired.unlink()

    @staticmethod
    def serialize_plan(plan: BuildPlan) -> str:
        data = {
            "run_id": plan.run_id,
            "output_dir": str(plan.output_dir),
            "toolchains": [resolved.to_mapping() for resolved in plan.toolchains],
            "phases": [
                {
                    "name": phase.name,
                    "ordinal": phase.ordinal,
                    "tool": phase.operation.tool_name if phase.operation else None,
                    "command": list(phase.operation.argv) if isinstance(phase.operation, CommandOperation) else None,
                    "pre_hook": phase.pre_hook,
                    "post_hook": phase.post_hook,
                }
                for phase in plan.phases
            ],
            "environment": dict(plan.environment.variables),
        }
        return json.dumps(data, indent=2)


def _lexists(path: Path) -> bool:
    return path.is_symlink() or path.exists()


__all__ = [
    "ArtifactSet",
    "BuildOptions",
    "BuildOrchestrator",
    "BuildPlan",
    "PHASE_GRAPH",
    "phase_order",
]
