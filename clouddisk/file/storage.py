"""
Disk Storage

Design Decision: Where Bytes Land
==================================

Options Considered:
1. Write straight to the final path
   - Simple
   - A failed or interrupted transfer leaves a truncated file that looks
     complete to the next reader

2. Write to a temporary file, then rename into place
   - Readers only ever see complete files
   - Needs a temp directory on the same filesystem

Decision: Temporary file + rename, everywhere a final artifact is written
- Server uploads are received into temp/ and renamed into files/
- Client range buffers are hidden part files next to the destination
- Reassembly writes a .merging file and renames it over the destination

Server Layout:
```
data/
├── files/            # The tree exposed to clients (LIST root)
│   └── docs/report.pdf
└── temp/             # Incoming uploads and staged upload ranges
    ├── <random>.upload
    └── sessions/
        └── <session_id>/
            ├── 00000000000000000000.part
            └── 00000000000000209716.part
```
"""

import logging
import os
import re
import shutil
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import aiofiles
import aiofiles.os

from ..errors import PathEscapeError

logger = logging.getLogger(__name__)

# Copy size while merging range buffers
MERGE_BLOCK_SIZE = 256 * 1024

_SESSION_ID = re.compile(r'^[0-9a-f]{32}$')


@dataclass(frozen=True)
class FileEntry:
    """A file in the server tree, as reported by LIST."""
    path: str
    size: int


@dataclass(frozen=True)
class RangeBuffer:
    """A finished range written to its own temporary file."""
    index: int
    path: Path


def part_path(destination: Path, index: int) -> Path:
    """Temporary buffer path for one range of a download."""
    destination = Path(destination)
    return destination.parent / f".{destination.name}.part{index}"


async def remove_quietly(path: Path) -> bool:
    """
    Delete a file if it exists.

    Cleanup failures are logged, never raised.

    Returns:
        True if the file is gone afterwards
    """
    try:
        await aiofiles.os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Could not delete {path}: {e}")
        return False
    return True


async def discard_buffers(paths: Sequence[Path]):
    """Delete every range buffer in `paths`."""
    for path in paths:
        await remove_quietly(path)


async def merge_ranges(buffers: Sequence[RangeBuffer], destination: Path,
                       work_dir: Optional[Path] = None) -> bool:
    """
    Concatenate range buffers into `destination` in ascending index order.

    The concatenation is written to a temporary file and renamed over the
    destination, so callers either get the complete file or no file. On any
    write failure the temporary file and the destination are removed.
    Every buffer is deleted afterwards, whatever the outcome.

    Args:
        buffers: One buffer per range, in any order
        destination: Final artifact path
        work_dir: Directory for the temporary file (default: next to destination)

    Returns:
        True if the destination now holds the full concatenation
    """
    destination = Path(destination)
    ordered = sorted(buffers, key=lambda b: b.index)
    work_dir = Path(work_dir) if work_dir else destination.parent
    temp_path = work_dir / f".{destination.name}.{uuid.uuid4().hex[:8]}.merging"

    try:
        await aiofiles.os.makedirs(destination.parent, exist_ok=True)
        await aiofiles.os.makedirs(work_dir, exist_ok=True)

        async with aiofiles.open(temp_path, 'wb') as out:
            for buffer in ordered:
                async with aiofiles.open(buffer.path, 'rb') as f:
                    while True:
                        block = await f.read(MERGE_BLOCK_SIZE)
                        if not block:
                            break
                        await out.write(block)

        await aiofiles.os.replace(temp_path, destination)
        logger.debug(f"Merged {len(ordered)} ranges into {destination}")
        return True

    except OSError as e:
        logger.error(f"Failed to merge ranges into {destination}: {e}")
        await remove_quietly(temp_path)
        await remove_quietly(destination)
        return False

    finally:
        await discard_buffers([b.path for b in ordered])


class ServerStorage:
    """
    The server's view of its data directory.

    Provides:
    - Client path resolution under files/ (escapes rejected)
    - Temp paths for atomic uploads
    - Staging areas for parallel uploads
    - Recursive listing
    """

    def __init__(self, data_dir: Path):
        """
        Initialize server storage.

        Args:
            data_dir: Root directory for all stored data
        """
        self.data_dir = Path(data_dir)
        self.files_dir = self.data_dir / "files"
        self.temp_dir = self.data_dir / "temp"
        self.sessions_dir = self.temp_dir / "sessions"

        self._ensure_directories()
        self._root = self.files_dir.resolve()

    def _ensure_directories(self):
        """Create storage directories if they don't exist."""
        for dir_path in [self.files_dir, self.temp_dir, self.sessions_dir]:
            dir_path.mkdir(parents=True, exist_ok=True)

    # === Paths ===

    def resolve(self, remote_path: str) -> Path:
        """
        Map a client path to a location under files/.

        Raises:
            PathEscapeError: if the path resolves outside files/
        """
        candidate = (self._root / remote_path.lstrip('/')).resolve()
        if candidate == self._root:
            raise PathEscapeError(remote_path)
        try:
            candidate.relative_to(self._root)
        except ValueError:
            raise PathEscapeError(remote_path) from None
        return candidate

    def file_size(self, remote_path: str) -> Optional[int]:
        """Size of a stored file, or None if it is not a regular file."""
        path = self.resolve(remote_path)
        if not path.is_file():
            return None
        return path.stat().st_size

    def new_temp_path(self, suffix: str = '.upload') -> Path:
        """A fresh, unused path inside temp/."""
        return self.temp_dir / f"{uuid.uuid4().hex}{suffix}"

    async def commit(self, temp_path: Path, remote_path: str) -> Path:
        """Move a finished temp file to its final location."""
        target = self.resolve(remote_path)
        await aiofiles.os.makedirs(target.parent, exist_ok=True)
        await aiofiles.os.replace(temp_path, target)
        return target

    # === Staging (parallel uploads) ===

    def session_dir(self, session_id: str) -> Path:
        if not _SESSION_ID.match(session_id):
            raise PathEscapeError(session_id)
        return self.sessions_dir / session_id

    def staged_part_path(self, session_id: str, start: int) -> Path:
        return self.session_dir(session_id) / f"{start:020d}.part"

    def staged_parts(self, session_id: str) -> List[Tuple[int, Path]]:
        """Staged ranges of a session as (start offset, path), by offset."""
        directory = self.session_dir(session_id)
        if not directory.is_dir():
            return []

        parts = []
        for entry in directory.iterdir():
            if entry.suffix == '.part' and entry.stem.isdigit():
                parts.append((int(entry.stem), entry))
        return sorted(parts)

    def discard_session(self, session_id: str) -> bool:
        """Remove a session's staging directory."""
        directory = self.session_dir(session_id)
        if not directory.exists():
            return False
        shutil.rmtree(directory, ignore_errors=True)
        return True

    # === Listing ===

    def list_files(self) -> List[FileEntry]:
        """
        Every regular file under files/, with its root-relative path.

        Directories are walked but never reported. Paths use '/'.
        """
        entries = []
        for dirpath, dirnames, filenames in os.walk(self.files_dir):
            dirnames.sort()
            for name in sorted(filenames):
                full = Path(dirpath) / name
                if not full.is_file():
                    continue
                relative = full.relative_to(self.files_dir).as_posix()
                entries.append(FileEntry(path=relative, size=full.stat().st_size))
        return entries
