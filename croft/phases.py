"""Sequential execution of typed build phases with before/after hooks."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Sequence
import time

from core.command_runner import CommandCancelled, CommandError, CommandRunner

from .console import Console
from .environment import EnvironmentContext
from .errors import BuildCancelledError, BuildError, CroftError, ToolFailureError


@dataclass(frozen=True, slots=True)
class CommandOperation:
    """Run an external tool; ``tool`` names it in failure reports."""

    argv: tuple[str, ...]
    cwd: Path | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    tool: str | None = None

    @property
    def tool_name(self) -> str:
        return self.tool or Path(self.argv[0]).name


@dataclass(frozen=True, slots=True)
class CallableOperation:
    """Run in-process work that receives the phase's environment."""

    func: Callable[[EnvironmentContext], Any]
    tool: str = "croft"

    @property
    def tool_name(self) -> str:
        return self.tool


Operation = CommandOperation | CallableOperation


def shell_hook(command: str, *, cwd: Path | None = None) -> CommandOperation:
    return CommandOperation(argv=("/bin/sh", "-c", command), cwd=cwd, tool="sh")


@dataclass(frozen=True, slots=True)
class BuildPhase:
    name: str
    ordinal: int
    operation: Operation | None
    pre_hook: str | None = None
    post_hook: str | None = None


class HookRegistry:
    """Named hook operations; a phase referencing an unknown name skips it."""

    def __init__(self, hooks: Mapping[str, Operation] | None = None) -> None:
        self._hooks: Dict[str, Operation] = dict(hooks or {})

    def register(self, name: str, operation: Operation) -> None:
        self._hooks[name] = operation

    def get(self, name: str | None) -> Operation | None:
        if not name:
            return None
        return self._hooks.get(name)

    def names(self) -> List[str]:
        return sorted(self._hooks)


class SequenceState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(slots=True)
class PhaseRecord:
    phase: str
    step: str
    tool: str
    duration: float
    ok: bool


@dataclass(slots=True)
class SequenceResult:
    state: SequenceState
    failed_index: int | None = None
    failed_phase: str | None = None
    cause: CroftError | None = None
    records: List[PhaseRecord] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state is SequenceState.SUCCEEDED

    def raise_for_failure(self) -> None:
        if self.cause is not None:
            raise self.cause


class PhaseSequencer:
    """Runs phases strictly in ascending ordinal order.

    ``Pending -> Running(0) -> ... -> Succeeded``; any failing sub-step moves
    straight to ``Failed(i, cause)`` and later phases never start.
    """

    def __init__(
        self,
        *,
        runner: CommandRunner,
        console: Console,
        hooks: HookRegistry | None = None,
        stream: bool = False,
    ) -> None:
        self._runner = runner
        self._console = console
        self._hooks = hooks or HookRegistry()
        self._stream = stream
        self.state = SequenceState.PENDING
        self.current: int | None = None
        self._cancelled = False
        self._in_command = False

    @staticmethod
    def order(phases: Sequence[BuildPhase]) -> List[BuildPhase]:
        seen_names: set[str] = set()
        seen_ordinals: set[int] = set()
        for phase in phases:
            if phase.name in seen_names:
                raise ValueError(f"Duplicate phase name '{phase.name}'")
            if phase.ordinal in seen_ordinals:
                raise ValueError(f"Duplicate phase ordinal {phase.ordinal} ('{phase.name}')")
            seen_names.add(phase.name)
            seen_ordinals.add(phase.ordinal)
        return sorted(phases, key=lambda phase: phase.ordinal)

    def cancel(self) -> bool:
        """Stop the sequence: the running command is terminated and no later step starts.

        Returns False once the sequence has already finished.
        """
        if self.state in (SequenceState.SUCCEEDED, SequenceState.FAILED):
            return False
        self._cancelled = True
        if self._in_command:
            self._runner.cancel()
        return True

    def run(self, phases: Sequence[BuildPhase], env: EnvironmentContext) -> SequenceResult:
        ordered = self.order(phases)
        result = SequenceResult(state=SequenceState.PENDING)
        for index, phase in enumerate(ordered):
            self.state = SequenceState.RUNNING
            self.current = index
            self._console.info(f"==> {phase.name}")
            steps = (
                ("pre-hook", self._hook(phase.pre_hook, phase=phase.name)),
                ("body", phase.operation),
                ("post-hook", self._hook(phase.post_hook, phase=phase.name)),
            )
            for step, operation in steps:
                if operation is None:
                    continue
                started = time.monotonic()
                try:
                    self._raise_if_cancelled(phase.name)
                    self._execute(operation, phase=phase.name, env=env, step=step)
                    self._raise_if_cancelled(phase.name)
                except CroftError as exc:
                    self._cancelled = False
                    result.records.append(
                        PhaseRecord(phase.name, step, operation.tool_name, time.monotonic() - started, False)
                    )
                    self.state = SequenceState.FAILED
                    result.state = SequenceState.FAILED
                    result.failed_index = index
                    result.failed_phase = phase.name
                    result.cause = exc
                    self._console.error(f"{phase.name} failed during {step}")
                    return result
                result.records.append(
                    PhaseRecord(phase.name, step, operation.tool_name, time.monotonic() - started, True)
                )

        self.state = SequenceState.SUCCEEDED
        self.current = None
        result.state = SequenceState.SUCCEEDED
        return result

    def _raise_if_cancelled(self, phase: str) -> None:
        if self._cancelled:
            raise BuildCancelledError(phase=phase)

    def _hook(self, name: str | None, *, phase: str) -> Operation | None:
        if not name:
            return None
        operation = self._hooks.get(name)
        if operation is None:
            self._console.debug(f"Hook '{name}' for phase '{phase}' is not defined; skipping")
        return operation

    def _execute(self, operation: Operation, *, phase: str, env: EnvironmentContext, step: str) -> None:
        tool = operation.tool_name
        if step != "body":
            tool = f"{step} {tool}"
        if isinstance(operation, CallableOperation):
            try:
                operation.func(env)
            except KeyboardInterrupt:
                raise BuildCancelledError(phase=phase) from None
            except BuildError as exc:
                if exc.phase is None:
                    exc.phase = phase
                    exc.context["phase"] = phase
                raise
            except OSError as exc:
                raise ToolFailureError(phase=phase, tool=tool, returncode=None, detail=str(exc)) from exc
            return

        process_env = env.to_process_env()
        process_env.update(operation.env)
        self._in_command = True
        try:
            self._raise_if_cancelled(phase)
            self._runner.run(
                operation.argv,
                cwd=operation.cwd,
                env=process_env,
                note=f"[{phase}]",
                stream=self._stream,
                inherit_env=False,
            )
        except CommandCancelled:
            raise BuildCancelledError(phase=phase) from None
        except CommandError as exc:
            detail = exc.result.stderr or exc.result.stdout
            raise ToolFailureError(
                phase=phase,
                tool=tool,
                returncode=exc.result.returncode,
                detail=detail,
            ) from exc
        except OSError as exc:
            raise ToolFailureError(phase=phase, tool=tool, returncode=127, detail=str(exc)) from exc
        finally:
            self._in_command = False


__all__ = [
    "BuildPhase",
    "CallableOperation",
    "CommandOperation",
    "HookRegistry",
    "Operation",
    "PhaseRecord",
    "PhaseSequencer",
    "SequenceResult",
    "SequenceState",
    "shell_hook",
]
