"""Levelled console output used in place of a logging framework."""
from __future__ import annotations

from typing import Mapping, TextIO
import os
import sys


LOG_ENV_VAR = "CROFT_LOG"


class Console:
    """Simple console output handler with configurable log level.

    Levels: none < error < info < debug
    Default: 'info'
    """

    LEVELS = {
        "none": 0,
        "error": 1,
        "info": 2,
        "debug": 3,
    }

    def __init__(
        self,
        level: str = "info",
        dry_run: bool = False,
        *,
        stream: TextIO | None = None,
        error_stream: TextIO | None = None,
    ) -> None:
        self.level_name = level if level in self.LEVELS else "info"
        self.level = self.LEVELS[self.level_name]
        self.dry_run = dry_run
        self._stream = stream
        self._error_stream = error_stream

    @classmethod
    def from_environment(
        cls,
        *,
        override: str | None = None,
        default: str = "info",
        dry_run: bool = False,
        env: Mapping[str, str] | None = None,
    ) -> "Console":
        """Pick the level from ``override``, then ``CROFT_LOG``, then ``default``."""
        source = os.environ if env is None else env
        level = override or source.get(LOG_ENV_VAR, "").strip().lower() or default
        return cls(level, dry_run=dry_run)

    def _out(self) -> TextIO:
        return self._stream or sys.stdout

    def _err(self) -> TextIO:
        return self._error_stream or sys.stderr

    def info(self, message: str) -> None:
        if self.level >= self.LEVELS["info"]:
            print(f"[INFO] {message}", file=self._out())

    def error(self, message: str) -> None:
        if self.level >= self.LEVELS["error"]:
            print(f"[ERROR] {message}", file=self._err())

    def dry(self, message: str) -> None:
        if self.dry_run:
            print(f"[DRY] {message}", file=self._out())

    def debug(self, message: str) -> None:
        if self.level >= self.LEVELS["debug"]:
            print(f"[DEBUG] {message}", file=self._out())

    def say(self, message: str = "") -> None:
        """Unprefixed output that is shown unless the console is silenced."""
        if self.level > self.LEVELS["none"]:
            print(message, file=self._out())
