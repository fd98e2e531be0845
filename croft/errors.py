"""Error taxonomy shared by every croft component.

Each family maps to a distinct CLI exit status so callers can tell a failed
toolchain resolution from a failed compile or a missing artifact without
parsing messages.
"""
from __future__ import annotations

from typing import Iterable, Mapping, Sequence


EXIT_CONFIG = 2
EXIT_RESOLUTION = 3
EXIT_BUILD = 4
EXIT_INSTALL = 5
EXIT_LOCKED = 6
EXIT_CANCELLED = 130


class CroftError(RuntimeError):
    """Base error carrying an exit status, an optional hint and context lines."""

    exit_code: int = 1
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint
        self.context = dict(context or {})

    def __str__(self) -> str:
        parts = [self.message]
        for key, value in self.context.items():
            if value:
                parts.append(f"  {key}: {value}")
        if self.hint:
            parts.append(f"Hint: {self.hint}")
        return "\n".join(parts)


class ResolutionError(CroftError):
    exit_code = EXIT_RESOLUTION


class AmbiguousSpecError(ResolutionError):
    """The toolchain reference is floating or has nothing to verify against."""


class NotFoundError(ResolutionError):
    """No artifact exists for the requested toolchain on this platform."""


class IntegrityError(ResolutionError):
    """Fetched content does not match the pinned hash."""


class NetworkError(ResolutionError):
    """Transient fetch failure; safe to retry."""

    retryable = True


class BuildError(CroftError):
    exit_code = EXIT_BUILD

    def __init__(
        self,
        message: str,
        *,
        phase: str | None = None,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        merged = {"phase": phase or ""}
        merged.update(context or {})
        super().__init__(message, hint=hint, context=merged)
        self.phase = phase


class LockfileDriftError(BuildError):
    """Declared dependencies and the lockfile disagree."""

    def __init__(self, drift: Sequence[str], *, lockfile: str, phase: str | None = None) -> None:
        self.drift = list(drift)
        lines = "\n".join(f"  - {entry}" for entry in self.drift)
        super().__init__(
            f"Lockfile {lockfile} does not match declared dependencies:\n{lines}",
            phase=phase,
            hint="Regenerate the lockfile with the package manager and commit it; croft never re-pins.",
        )


class ToolFailureError(BuildError):
    """An external tool driven by a phase exited unsuccessfully."""

    def __init__(
        self,
        *,
        phase: str,
        tool: str,
        returncode: int | None,
        detail: str = "",
    ) -> None:
        self.tool = tool
        self.returncode = returncode
        status = "error" if returncode is None else f"exit status {returncode}"
        super().__init__(
            f"Phase '{phase}' failed: {tool} ({status})",
            phase=phase,
            context={"tool": tool, "output": detail.strip()[-2000:]},
        )


class BuildCancelledError(BuildError):
    exit_code = EXIT_CANCELLED

    def __init__(self, *, phase: str | None) -> None:
        super().__init__("Build cancelled; running process tree terminated", phase=phase)


class InstallError(CroftError):
    exit_code = EXIT_INSTALL


class MissingArtifactError(InstallError):
    """One or more mandatory artifact rules matched nothing."""

    def __init__(self, missing: Iterable[str]) -> None:
        self.missing = list(missing)
        joined = ", ".join(self.missing)
        super().__init__(
            f"Mandatory artifact(s) missing: {joined}",
            hint="Check that the native build produced the primary binary for this platform.",
        )


class LockError(CroftError):
    exit_code = EXIT_LOCKED


class WorkspaceLockedError(LockError):
    def __init__(self, workspace: str, *, holder: str | None = None) -> None:
        super().__init__(
            f"Workspace locked: another croft build is running in {workspace}",
            hint="Retry later or pass --wait SECONDS to queue behind it.",
            context={"holder": holder or ""},
        )


__all__ = [
    "AmbiguousSpecError",
    "BuildCancelledError",
    "BuildError",
    "CroftError",
    "EXIT_BUILD",
    "EXIT_CANCELLED",
    "EXIT_CONFIG",
    "EXIT_INSTALL",
    "EXIT_LOCKED",
    "EXIT_RESOLUTION",
    "InstallError",
    "IntegrityError",
    "LockError",
    "LockfileDriftError",
    "MissingArtifactError",
    "NetworkError",
    "NotFoundError",
    "ResolutionError",
    "ToolFailureError",
    "WorkspaceLockedError",
]
