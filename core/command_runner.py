"""External tool execution: a real runner, a cancellable process tree, and a dry-run recorder."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Sequence
import os
import shlex
import subprocess
import threading

import psutil


@dataclass
class CommandResult:
    """Outcome of one command; output is empty when it was streamed to the terminal."""

    command: Sequence[str]
    returncode: int
    stdout: str
    stderr: str
    streamed: bool = False


class CommandError(RuntimeError):
    """A checked command exited non-zero."""

    def __init__(self, result: CommandResult):
        lines = [f"{shlex.join(result.command)} exited with status {result.returncode}"]
        if result.streamed:
            lines.append("(output was streamed above)")
        else:
            lines.extend(text.rstrip() for text in (result.stdout, result.stderr) if text.strip())
        super().__init__("\n".join(lines))
        self.result = result


class CommandCancelled(RuntimeError):
    """The command's process tree was terminated before it finished."""

    def __init__(self, command: Sequence[str]):
        super().__init__(f"Cancelled: {shlex.join(command)}")
        self.command = list(command)


class CommandRunner:
    """Interface shared by the real runner and the dry-run recorder."""

    def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        check: bool = True,
        note: str | None = None,
        stream: bool = False,
        inherit_env: bool = True,
    ) -> CommandResult:
        raise NotImplementedError

    def cancel(self) -> bool:
        return False

    def format_command(self, command: Sequence[str]) -> str:
        return shlex.join(command)


def terminate_process_tree(pid: int, *, timeout: float = 5.0) -> None:
    """SIGTERM ``pid`` and its descendants, then SIGKILL whatever outlives ``timeout``."""

    try:
        root = psutil.Process(pid)
        victims = root.children(recursive=True) + [root]
    except psutil.NoSuchProcess:
        return
    for process in victims:
        try:
            process.terminate()
        except psutil.NoSuchProcess:
            pass
    _, survivors = psutil.wait_procs(victims, timeout=timeout)
    for process in survivors:
        try:
            process.kill()
        except psutil.NoSuchProcess:
            pass


class SubprocessCommandRunner(CommandRunner):
    """Runs one command at a time; :meth:`cancel` may be called from another thread."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._process: subprocess.Popen[str] | None = None
        self._cancelled = False

    def cancel(self) -> bool:
        """Terminate the running command, or fail the next one if none is running."""

        with self._lock:
            process = self._process
            self._cancelled = True
        if process is None or process.poll() is not None:
            return False
        terminate_process_tree(process.pid)
        return True

    def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        check: bool = True,
        note: str | None = None,
        stream: bool = False,
        inherit_env: bool = True,
    ) -> CommandResult:
        process_env: Dict[str, str] | None = None
        if env is not None or not inherit_env:
            process_env = dict(os.environ) if inherit_env else {}
            process_env.update(env or {})

        capture = None if stream else subprocess.PIPE
        with self._lock:
            if self._cancelled:
                self._cancelled = False
                raise CommandCancelled(command)
            process = subprocess.Popen(
                list(command),
                cwd=str(cwd) if cwd else None,
                env=process_env,
                stdout=capture,
                stderr=capture,
                text=True,
            )
            self._process = process
        try:
            stdout, stderr = process.communicate()
        except KeyboardInterrupt:
            terminate_process_tree(process.pid)
            process.wait()
            raise CommandCancelled(command) from None
        finally:
            with self._lock:
                self._process = None
                cancelled = self._cancelled
                self._cancelled = False
        if cancelled:
            raise CommandCancelled(command)

        result = CommandResult(
            command=command,
            returncode=process.returncode,
            stdout=stdout or "",
            stderr=stderr or "",
            streamed=stream,
        )
        if check and result.returncode != 0:
            raise CommandError(result)
        return result


@dataclass(slots=True)
class RecordedCommand:
    command: List[str]
    cwd: str | None = None
    env: Dict[str, str] = field(default_factory=dict)
    note: str | None = None
    stream: bool = False


class RecordingCommandRunner(CommandRunner):
    """Dry-run runner: remembers every command and reports success."""

    def __init__(self) -> None:
        self.commands: List[RecordedCommand] = []

    def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        check: bool = True,
        note: str | None = None,
        stream: bool = False,
        inherit_env: bool = True,
    ) -> CommandResult:
        self.commands.append(
            RecordedCommand(
                command=list(command),
                cwd=str(cwd) if cwd else None,
                env=dict(env or {}),
                note=note,
                stream=stream,
            )
        )
        return CommandResult(command=command, returncode=0, stdout="", stderr="")

    def iter_formatted(self, *, workspace: Path | None = None) -> Iterable[str]:
        """``[dry-run] <note> (cwd=<dir>) <command>`` per recorded command."""

        for record in self.commands:
            cwd = record.cwd or (str(workspace) if workspace else None)
            parts = ["[dry-run]"]
            if record.note:
                parts.append(record.note)
            if cwd:
                parts.append(f"(cwd={cwd})")
            parts.append(self.format_command(record.command))
            yield " ".join(parts)


__all__ = [
    "CommandCancelled",
    "CommandError",
    "CommandResult",
    "CommandRunner",
    "RecordedCommand",
    "RecordingCommandRunner",
    "SubprocessCommandRunner",
    "terminate_process_tree",
]
