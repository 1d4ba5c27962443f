"""Pack tenant working directories into a single zip blob and back."""

from __future__ import annotations

import asyncio
import errno
import logging
import shutil
import zipfile
from pathlib import Path, PurePosixPath
from typing import Any, Callable, TypeVar

from .errors import TransientIOError


LOGGER = logging.getLogger("fleetworker.archive")

_LOCK_ERRNOS = {errno.EBUSY, errno.EACCES, errno.EPERM, errno.ENOTEMPTY}

T = TypeVar("T")


def is_lock_error(exc: BaseException) -> bool:
    if isinstance(exc, PermissionError):
        return True
    return isinstance(exc, OSError) and exc.errno in _LOCK_ERRNOS


class ArchiveCodec:
    def __init__(self, *, retries: int = 5, retry_delay: float = 1.0) -> None:
        self._retries = max(1, retries)
        self._retry_delay = max(0.0, retry_delay)

    async def _with_lock_retry(
        self, operation: str, path: Path, func: Callable[..., T], *args: Any
    ) -> T:
        # Delay grows linearly with the attempt number.
        for attempt in range(1, self._retries + 1):
            try:
                return await asyncio.to_thread(func, *args)
            except OSError as exc:
                if not is_lock_error(exc):
                    raise
                if attempt >= self._retries:
                    LOGGER.error(
                        "stage=file_locked operation=%s path=%s attempts=%s error=%s",
                        operation,
                        path,
                        attempt,
                        exc,
                    )
                    raise TransientIOError(str(path), attempt) from exc
                LOGGER.warning(
                    "stage=file_locked_retry operation=%s path=%s attempt=%s/%s error=%s",
                    operation,
                    path,
                    attempt,
                    self._retries,
                    exc,
                )
                await asyncio.sleep(self._retry_delay * attempt)
        raise AssertionError("unreachable")

    async def copy_tree(self, source: Path, target: Path) -> None:
        await self._with_lock_retry("copy", source, _copy_tree, source, target)

    async def pack(self, source_dir: Path, archive_path: Path) -> int:
        return await self._with_lock_retry("pack", source_dir, _pack, source_dir, archive_path)

    async def unpack(self, archive_path: Path, target_dir: Path) -> int:
        return await self._with_lock_retry("unpack", archive_path, _unpack, archive_path, target_dir)

    async def read_bytes(self, path: Path) -> bytes:
        return await self._with_lock_retry("read", path, path.read_bytes)

    async def write_bytes(self, path: Path, data: bytes) -> None:
        await self._with_lock_retry("write", path, _write_bytes, path, data)

    async def replace_tree(self, source: Path, target: Path) -> None:
        await self._with_lock_retry("replace", target, _replace_tree, source, target)

    async def remove(self, path: Path) -> None:
        await self._with_lock_retry("remove", path, _remove, path)


def _copy_tree(source: Path, target: Path) -> None:
    if target.exists():
        shutil.rmtree(target)
    target.parent.mkdir(parents=True, exist_ok=True)
    shutil.copytree(source, target)


def _pack(source_dir: Path, archive_path: Path) -> int:
    if not source_dir.is_dir():
        raise FileNotFoundError(errno.ENOENT, "working directory does not exist", str(source_dir))
    archive_path.parent.mkdir(parents=True, exist_ok=True)
    count = 0
    with zipfile.ZipFile(archive_path, mode="w", compression=zipfile.ZIP_DEFLATED, allowZip64=True) as archive:
        for path in sorted(source_dir.rglob("*")):
            if not path.is_file():
                continue
            archive.write(path, arcname=path.relative_to(source_dir).as_posix())
            count += 1
    return count


def _safe_member_path(target_dir: Path, name: str) -> Path:
    member = PurePosixPath(name)
    if member.is_absolute() or ".." in member.parts:
        raise ValueError(f"unsafe archive member: {name}")
    return target_dir.joinpath(*member.parts)


def _unpack(archive_path: Path, target_dir: Path) -> int:
    target_dir.mkdir(parents=True, exist_ok=True)
    count = 0
    with zipfile.ZipFile(archive_path) as archive:
        for info in archive.infolist():
            destination = _safe_member_path(target_dir, info.filename)
            if info.is_dir():
                destination.mkdir(parents=True, exist_ok=True)
                continue
            destination.parent.mkdir(parents=True, exist_ok=True)
            with archive.open(info) as src, destination.open("wb") as dst:
                shutil.copyfileobj(src, dst)
            count += 1
    return count


def _replace_tree(source: Path, target: Path) -> None:
    if target.exists():
        shutil.rmtree(target)
    target.parent.mkdir(parents=True, exist_ok=True)
    shutil.move(str(source), str(target))


def _write_bytes(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)


def _remove(path: Path) -> None:
    if path.is_dir():
        shutil.rmtree(path)
    else:
        path.unlink(missing_ok=True)


__all__ = ["ArchiveCodec", "is_lock_error"]
