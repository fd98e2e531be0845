"""Unpacking of downloaded toolchain archives."""
from __future__ import annotations

from pathlib import Path
from typing import Protocol
import shutil
import tarfile
import zipfile

import zstandard as zstd


# Longest suffix first so ``.tar.zst`` is not mistaken for ``.tar``.
_FORMATS: tuple[tuple[str, str], ...] = (
    (".tar.zst", "zst"),
    (".tar.bz2", "r:bz2"),
    (".tar.gz", "r:gz"),
    (".tar.xz", "r:xz"),
    (".tzst", "zst"),
    (".tbz", "r:bz2"),
    (".tgz", "r:gz"),
    (".txz", "r:xz"),
    (".tar", "r:"),
    (".zip", "zip"),
)


class ArchiveConsole(Protocol):
    dry_run: bool

    def info(self, message: str) -> None:
        ...

    def dry(self, message: str) -> None:
        ...


def archive_format(name: str) -> str:
    """Return ``"zst"``, ``"zip"`` or a :func:`tarfile.open` mode for ``name``."""

    lowered = name.lower()
    for suffix, fmt in _FORMATS:
        if lowered.endswith(suffix):
            return fmt
    supported = ", ".join(suffix for suffix, _ in _FORMATS)
    raise ValueError(f"Unsupported archive '{name}'. Supported suffixes: {supported}")


class ArchiveManager:
    """Extracts archives with tarfile's ``data`` filter, so members cannot escape the destination."""

    def __init__(self, console: ArchiveConsole) -> None:
        self._console = console

    def extract_archive(
        self,
        *,
        archive_path: Path | str,
        destination_dir: Path | str,
        strip_single_root: bool = False,
    ) -> Path:
        """Unpack ``archive_path`` into ``destination_dir`` and return the latter.

        With ``strip_single_root`` an archive whose only top-level entry is a
        directory (``node-v22.11.0-linux-x64/``) is flattened so ``bin/`` ends
        up directly under ``destination_dir``.
        """
        archive = Path(archive_path).expanduser()
        dest = Path(destination_dir).expanduser()
        if not archive.is_file():
            raise FileNotFoundError(f"Archive '{archive}' does not exist")
        if self._console.dry_run:
            self._console.dry(f"Would extract {archive} to {dest}")
            return dest

        fmt = archive_format(archive.name)
        dest.mkdir(parents=True, exist_ok=True)
        if fmt == "zst":
            with archive.open("rb") as raw, zstd.ZstdDecompressor().stream_reader(raw) as reader:
                with tarfile.open(fileobj=reader, mode="r|") as tar:
                    tar.extractall(path=dest, filter="data")
        elif fmt == "zip":
            _extract_zip(archive, dest)
        else:
            with tarfile.open(archive, fmt) as tar:
                tar.extractall(path=dest, filter="data")

        if strip_single_root:
            _flatten_single_root(dest)
        self._console.info(f"Extracted {archive.name}")
        return dest


def _extract_zip(archive: Path, dest: Path) -> None:
    with zipfile.ZipFile(archive) as bundle:
        for member in bundle.infolist():
            extracted = Path(bundle.extract(member, dest))
            mode = (member.external_attr >> 16) & 0o777
            if mode and not member.is_dir():
                extracted.chmod(mode)


def _flatten_single_root(dest: Path) -> None:
    children = list(dest.iterdir())
    if len(children) != 1 or children[0].is_symlink() or not children[0].is_dir():
        return
    parked = dest / f".{children[0].name}.flatten"
    children[0].rename(parked)
    for child in sorted(parked.iterdir()):
        shutil.move(str(child), str(dest / child.name))
    parked.rmdir()


__all__ = ["ArchiveManager", "archive_format"]
