"""Retrying async wrapper over raw file I/O.

Every blocking call runs in a worker thread via ``asyncio.to_thread``.
Transient OS errors are retried with bounded exponential backoff; anything
else is mapped onto the memory bank error taxonomy with the original
exception chained.
"""

from __future__ import annotations

import asyncio
import errno
import logging
import os
import stat as stat_mod
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, TypeVar

from memory_bank.config import StorageConfig
from memory_bank.errors import (
    DocumentNotFoundError,
    MemoryBankError,
    StorageError,
    StoragePermissionError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_ERRNOS = frozenset(
    {errno.EBUSY, errno.EAGAIN, errno.ETIMEDOUT, errno.EIO, errno.EPIPE, errno.ECONNRESET}
)


@dataclass(frozen=True)
class FileStat:
    size: int
    modified: datetime
    is_dir: bool


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, OSError) and exc.errno in TRANSIENT_ERRNOS


def _translate(exc: Exception, op: str, path: Path) -> MemoryBankError:
    details = {"path": path, "operation": op}
    if isinstance(exc, FileNotFoundError):
        return DocumentNotFoundError(f"File not found: {path}", details=details)
    if isinstance(exc, PermissionError):
        return StoragePermissionError(f"Permission denied during {op}: {path}", details=details)
    return StorageError(f"Failed to {op} {path}: {exc}", details=details)


class StorageAdapter:
    """Async file operations with retry and error classification."""

    def __init__(self, config: StorageConfig | None = None) -> None:
        self.config = config or StorageConfig()

    def _delay(self, attempt: int) -> float:
        c = self.config
        return min(c.base_delay * (c.backoff_factor ** (attempt - 1)), c.max_delay)

    async def _run(
        self,
        op: str,
        path: Path,
        fn: Callable[..., T],
        *args: Any,
        retries: int | None = None,
    ) -> T:
        """Run ``fn`` in a thread, retrying transient failures."""
        max_retries = self.config.max_retries if retries is None else retries
        attempt = 0
        while True:
            try:
                return await asyncio.to_thread(fn, *args)
            except MemoryBankError:
                raise
            except (OSError, UnicodeError) as e:
                if _is_transient(e) and attempt < max_retries:
                    attempt += 1
                    delay = self._delay(attempt)
                    logger.warning(
                        "%s %s failed (%s), retry %d/%d in %.2fs",
                        op, path, e, attempt, max_retries, delay,
                    )
                    await asyncio.sleep(delay)
                    continue
                raise _translate(e, op, path) from e

    # ── Files ─────────────────────────────────────────────────

    async def read_text(self, path: Path) -> str:
        return await self._run("read", path, path.read_text, "utf-8")

    async def write_text(self, path: Path, content: str) -> None:
        """Write atomically: temp sibling in the same directory, then rename."""
        await self._run("write", path, _atomic_write, path, content)
        logger.debug("Wrote %s (%d chars)", path, len(content))

    async def delete(self, path: Path) -> bool:
        """Remove a file. Returns False when it did not exist."""
        try:
            await self._run("delete", path, path.unlink)
        except DocumentNotFoundError:
            return False
        return True

    async def file_exists(self, path: Path) -> bool:
        return await self._run("stat", path, path.is_file)

    async def dir_exists(self, path: Path) -> bool:
        return await self._run("stat", path, path.is_dir)

    async def stat(self, path: Path) -> FileStat:
        st = await self._run("stat", path, path.stat)
        return FileStat(
            size=st.st_size,
            modified=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
            is_dir=stat_mod.S_ISDIR(st.st_mode),
        )

    # ── Directories ───────────────────────────────────────────

    async def mkdir(self, path: Path) -> None:
        """Create a directory and its parents. Concurrent creation is success."""
        await self._run("mkdir", path, _mkdir, path, retries=self.config.mkdir_retries)

    async def list_files(self, root: Path) -> list[str]:
        """Regular files under ``root``, recursive, as sorted relative POSIX paths.

        Symlinks, sockets, devices, FIFOs and dot-entries are skipped.
        Unreadable subdirectories are skipped with a warning.
        """
        return await self._run("list", root, _walk, root)

    async def list_dirs(self, root: Path) -> list[tuple[str, datetime]]:
        """Immediate subdirectories of ``root`` with their modification time."""
        return await self._run("list", root, _list_dirs, root)


# ── Blocking helpers (run in worker threads) ────────────────


def _atomic_write(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.{uuid.uuid4().hex[:8]}.tmp")
    try:
        with open(tmp, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    finally:
        if tmp.exists():
            tmp.unlink()


def _mkdir(path: Path) -> None:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except FileExistsError:
        if not path.is_dir():
            raise


def _walk(root: Path) -> list[str]:
    results: list[str] = []
    # Listing the root itself must fail loudly; subdirectories are best-effort.
    with os.scandir(root) as it:
        entries = list(it)
    stack = [(root, entries)]
    while stack:
        current, entries = stack.pop()
        for entry in entries:
            if entry.name.startswith("."):
                continue
            if entry.is_symlink():
                continue
            if entry.is_dir(follow_symlinks=False):
                try:
                    with os.scandir(entry.path) as sub:
                        stack.append((Path(entry.path), list(sub)))
                except OSError as e:
                    logger.warning("Skipping unreadable directory %s: %s", entry.path, e)
                continue
            if entry.is_file(follow_symlinks=False):
                results.append(Path(entry.path).relative_to(root).as_posix())
    results.sort()
    return results


def _list_dirs(root: Path) -> list[tuple[str, datetime]]:
    dirs: list[tuple[str, datetime]] = []
    with os.scandir(root) as it:
        for entry in it:
            if entry.name.startswith(".") or not entry.is_dir(follow_symlinks=False):
                continue
            mtime = entry.stat(follow_symlinks=False).st_mtime
            dirs.append((entry.name, datetime.fromtimestamp(mtime, tz=timezone.utc)))
    return dirs
