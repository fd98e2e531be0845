"""Append-only content-addressed store for unpacked toolchain archives."""
from __future__ import annotations

from pathlib import Path
from typing import Callable
from urllib.error import HTTPError, URLError
from urllib.parse import unquote, urlparse
from urllib.request import urlopen
import hashlib
import json
import os
import shutil
import uuid

from core.archive import ArchiveManager

from .console import Console
from .errors import IntegrityError, NetworkError, NotFoundError


ENTRY_MANIFEST = ".croft-entry.json"
_CHUNK_SIZE = 1 << 20

Fetcher = Callable[[str, Path], str]
"""Callable that copies ``source`` into ``target`` and returns the sha256 of the bytes written."""


def default_store_root() -> Path:
    override = os.environ.get("CROFT_STORE")
    if override:
        return Path(override).expanduser()
    cache_home = os.environ.get("XDG_CACHE_HOME")
    base = Path(cache_home).expanduser() if cache_home else Path.home() / ".cache"
    return base / "croft" / "store"


def fetch_to_file(source: str, target: Path, *, timeout: float = 60.0) -> str:
    """Copy ``source`` (http(s) URL, ``file://`` URL or local path) into ``target``."""

    digest = hashlib.sha256()
    parsed = urlparse(source)
    if parsed.scheme in {"http", "https"}:
        try:
            with urlopen(source, timeout=timeout) as response, target.open("wb") as handle:  # noqa: S310 - hash checked by caller
                for chunk in iter(lambda: response.read(_CHUNK_SIZE), b""):
                    digest.update(chunk)
                    handle.write(chunk)
        except HTTPError as exc:
            if exc.code in {404, 410}:
                raise NotFoundError(
                    f"No artifact at {source}",
                    context={"status": str(exc.code)},
                ) from exc
            raise NetworkError(
                f"Fetching {source} failed with HTTP {exc.code}",
                hint="Transient server error; retry the command.",
            ) from exc
        except (URLError, TimeoutError, ConnectionError) as exc:
            raise NetworkError(
                f"Fetching {source} failed: {getattr(exc, 'reason', exc)}",
                hint="Check connectivity and retry; fetches are idempotent.",
            ) from exc
        return digest.hexdigest()

    local = Path(unquote(parsed.path)) if parsed.scheme == "file" else Path(source).expanduser()
    if not local.is_file():
        raise NotFoundError(f"No artifact at {source}", context={"path": str(local)})
    with local.open("rb") as src, target.open("wb") as handle:
        for chunk in iter(lambda: src.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
            handle.write(chunk)
    return digest.hexdigest()


class ToolchainStore:
    """Unpacked toolchains keyed by the sha256 of the archive they came from.

    Entries are published with a single ``os.rename`` so concurrent resolvers
    never observe a half-written tree; the loser of a publish race discards
    its copy and uses the winner's.
    """

    def __init__(
        self,
        root: Path | str,
        *,
        console: Console,
        fetcher: Fetcher | None = None,
    ) -> None:
        self.root = Path(root).expanduser()
        self._console = console
        self._fetcher = fetcher or fetch_to_file
        self._archives = ArchiveManager(console)

    @staticmethod
    def entry_name(name: str, version: str, sha256: str) -> str:
        label = version.replace("/", "_").replace(":", "_")
        return f"{sha256[:32]}-{name}-{label}"

    def entry_path(self, name: str, version: str, sha256: str) -> Path:
        return self.root / self.entry_name(name, version, sha256)

    def lookup(self, name: str, version: str, sha256: str) -> Path | None:
        entry = self.entry_path(name, version, sha256)
        manifest_path = entry / ENTRY_MANIFEST
        if not manifest_path.is_file():
            return None
        try:
            manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise IntegrityError(
                f"Store entry manifest is corrupt: {manifest_path}",
                hint="Remove the entry; it will be refetched and verified.",
            ) from exc
        if not isinstance(manifest, dict) or manifest.get("sha256") != sha256:
            raise IntegrityError(
                f"Store entry {entry.name} does not record the expected hash",
                hint="Remove the entry; it will be refetched and verified.",
                context={"expected": sha256, "recorded": str(manifest.get("sha256") if isinstance(manifest, dict) else "")},
            )
        return entry

    def ensure(self, *, name: str, version: str, sha256: str, source: str) -> Path:
        """Return the store path for the archive, fetching and unpacking it on a miss."""

        existing = self.lookup(name, version, sha256)
        if existing is not None:
            self._console.info(f"Using cached {name} {version}")
            return existing

        staging_root = self.root / ".tmp"
        staging_root.mkdir(parents=True, exist_ok=True)
        workdir = staging_root / uuid.uuid4().hex
        workdir.mkdir()
        try:
            archive = workdir / Path(urlparse(source).path).name
            self._console.info(f"Fetching {name} {version} from {source}")
            actual = self._fetcher(source, archive)
            if actual != sha256:
                raise IntegrityError(
                    f"Content hash mismatch for {name} {version}",
                    hint="The pinned hash is authoritative; verify the source before updating the pin.",
                    context={"source": source, "expected": sha256, "actual": actual},
                )
            tree = workdir / "tree"
            self._archives.extract_archive(
                archive_path=archive,
                destination_dir=tree,
                strip_single_root=True,
            )
            manifest = {"name": name, "version": version, "sha256": sha256}
            (tree / ENTRY_MANIFEST).write_text(
                json.dumps(manifest, indent=2, sort_keys=True) + "\n",
                encoding="utf-8",
            )
            final = self.entry_path(name, version, sha256)
            try:
                os.rename(tree, final)
            except OSError:
                if self.lookup(name, version, sha256) is None:
                    raise
                self._console.debug(f"Store entry {final.name} published concurrently; reusing it")
            return final
        finally:
            shutil.rmtree(workdir, ignore_errors=True)


__all__ = ["ENTRY_MANIFEST", "Fetcher", "ToolchainStore", "default_store_root", "fetch_to_file"]
