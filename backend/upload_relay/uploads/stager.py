"""Local staging of incoming uploads.

Files are written to ``{root_dir}/{policy.staging_subdir}/{stored_name}``
where ``stored_name`` is ``{basename}-{epoch_ms}-{random}{ext}``. The
client's filename only contributes a sanitised basename and extension;
directory components are discarded.

Files are opened in exclusive-create mode, so two uploads can never write
to the same path. A file is only handed back once every byte is on disk;
any failure removes the partial file before ``StageFailed`` is raised.
"""
import asyncio
import logging
import random
import re
import time
from pathlib import Path, PurePosixPath
from typing import Iterable, Optional, Set

import aiofiles
import aiofiles.os

from .errors import StageFailed
from .schemas import AsyncReadable, IncomingFile, StagedFile

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024

_MAX_NAME_ATTEMPTS = 5
_MAX_BASENAME_CHARS = 100
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")
_UNSAFE_EXT_CHARS = re.compile(r"[^A-Za-z0-9]+")


def staged_name(
    original_filename: str,
    timestamp_ms: Optional[int] = None,
    suffix: Optional[int] = None,
) -> str:
    """Build a collision-resistant storage name from an untrusted filename.

    ``"../../etc/photo.JPG"`` becomes ``"photo-1700000000000-123456789.JPG"``.
    """
    name = (original_filename or "").replace("\\", "/").rsplit("/", 1)[-1]
    ext = PurePosixPath(name).suffix
    base = name[: -len(ext)] if ext else name

    base = _UNSAFE_CHARS.sub("_", base).strip("._")[:_MAX_BASENAME_CHARS] or "upload"
    ext = _UNSAFE_EXT_CHARS.sub("", ext)
    ext = f".{ext}" if ext else ""

    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    if suffix is None:
        suffix = random.randint(0, 10**9)
    return f"{base}-{timestamp_ms}-{suffix}{ext}"


class LocalStager:
    """Writes incoming byte streams to the local scratch area.

    Args:
        root_dir: Staging root shared by all requests.
        chunk_size: Bytes read from the stream per write.
    """

    def __init__(self, root_dir: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        self._root_dir = Path(root_dir).resolve()
        self._chunk_size = chunk_size
        self._ready_dirs: Set[Path] = set()

    @property
    def root_dir(self) -> Path:
        return self._root_dir

    def directory_for(self, subdir: str = "") -> Path:
        """Resolve a policy sub-directory, refusing anything outside the root."""
        directory = (self._root_dir / subdir).resolve() if subdir else self._root_dir
        if directory != self._root_dir and self._root_dir not in directory.parents:
            raise StageFailed(f"staging sub-directory escapes the staging root: {subdir!r}")
        return directory

    def ensure_directories(self, subdirs: Iterable[str] = ()) -> None:
        """Create the staging root and sub-directories. Safe to call repeatedly."""
        for directory in [self._root_dir, *(self.directory_for(s) for s in subdirs)]:
            if directory in self._ready_dirs:
                continue
            directory.mkdir(parents=True, exist_ok=True)
            self._ready_dirs.add(directory)
            logger.info("[uploads/stager] Staging directory ready: %s", directory)

    async def _ensure_directory(self, directory: Path) -> None:
        if directory in self._ready_dirs:
            return
        try:
            await aiofiles.os.makedirs(directory, exist_ok=True)
        except OSError as exc:
            raise StageFailed(f"cannot create staging directory: {exc.strerror or exc}") from exc
        self._ready_dirs.add(directory)

    async def stage(
        self,
        incoming: IncomingFile,
        subdir: str = "",
        max_bytes: Optional[int] = None,
    ) -> StagedFile:
        """Write *incoming* to a fresh file under *subdir*.

        Args:
            incoming: The file to persist.
            subdir: Policy staging sub-directory.
            max_bytes: Hard limit on bytes actually read from the stream.

        Returns:
            StagedFile describing the complete local copy.

        Raises:
            StageFailed: Disk full, permission denied, aborted stream, or
                the stream exceeded ``max_bytes``. Nothing is left on disk.
        """
        directory = self.directory_for(subdir)
        await self._ensure_directory(directory)

        for _ in range(_MAX_NAME_ATTEMPTS):
            stored_name = staged_name(incoming.filename)
            path = directory / stored_name
            try:
                size = await self._write(path, incoming.stream, max_bytes)
            except FileExistsError:
                logger.warning("[uploads/stager] Name collision on %s, retrying", stored_name)
                continue

            logger.info(
                "[uploads/stager] Staged %r as %s (%d bytes)",
                incoming.filename, stored_name, size,
            )
            return StagedFile(
                stored_name=stored_name,
                path=path,
                size_bytes=size,
                original_filename=incoming.filename,
                content_type=incoming.content_type,
            )

        raise StageFailed("could not allocate a unique staging name")

    async def _write(self, path: Path, stream: AsyncReadable, max_bytes: Optional[int]) -> int:
        try:
            fh = await aiofiles.open(path, "xb")
        except FileExistsError:
            raise
        except OSError as exc:
            raise StageFailed(exc.strerror or str(exc)) from exc

        written = 0
        try:
            try:
                while True:
                    chunk = await stream.read(self._chunk_size)
                    if not chunk:
                        break
                    written += len(chunk)
                    if max_bytes is not None and written > max_bytes:
                        raise StageFailed(
                            f"upload exceeds the {max_bytes} byte limit", status_code=413
                        )
                    await fh.write(chunk)
            finally:
                await fh.close()
        except StageFailed:
            await self._discard(path)
            raise
        except asyncio.CancelledError:
            await self._discard(path)
            raise
        except OSError as exc:
            await self._discard(path)
            raise StageFailed(exc.strerror or str(exc)) from exc
        except Exception as exc:
            await self._discard(path)
            raise StageFailed(f"upload stream aborted: {exc}") from exc

        return written

    async def _discard(self, path: Path) -> None:
        """Best-effort removal of a partially written file."""
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError:
            return
        except OSError as exc:
            logger.error("[uploads/stager] Could not remove partial file %s: %s", path, exc)
            return
        logger.info("[uploads/stager] Removed partial file %s", path.name)
