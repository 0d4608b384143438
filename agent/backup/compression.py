"""
Archive creation for the archive backup method.

Builds a single gzip-compressed tar from all sources. Directories are added
recursively, files individually; entries the tar format cannot hold
(sockets, FIFOs, devices) and entries that disappear while the walk is in
progress are skipped with a warning.
"""

import os
import stat
import tarfile
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Callable, Optional

from agent.models import Source
from .sources import SourceFilter


logger = logging.getLogger(__name__)


class CompressionError(Exception):
    """Raised when archive creation fails."""
    pass


@dataclass
class ArchiveStats:
    path: str
    size: int
    files_processed: int
    bytes_processed: int
    skipped: int


class _ArchiveWriter:
    """Adds entries one at a time so each can be reported and re-checked."""

    def __init__(self, tar: tarfile.TarFile, on_entry: Optional[Callable]):
        self.tar = tar
        self.on_entry = on_entry
        self.files_processed = 0
        self.bytes_processed = 0
        self.skipped = 0

    def add(self, path: Path, arcname: str) -> bool:
        try:
            mode = path.lstat().st_mode
        except FileNotFoundError:
            logger.warning(f"File not found during archiving: {path}")
            self.skipped += 1
            return False

        if not (stat.S_ISREG(mode) or stat.S_ISDIR(mode) or stat.S_ISLNK(mode)):
            logger.warning(f"Skipping unsupported file type: {path}")
            self.skipped += 1
            return False

        try:
            self.tar.add(str(path), arcname=arcname, recursive=False)
        except FileNotFoundError:
            logger.warning(f"File not found during archiving: {path}")
            self.skipped += 1
            return False

        if stat.S_ISREG(mode):
            self.files_processed += 1
            try:
                self.bytes_processed += path.stat().st_size
            except OSError:
                pass
            if self.on_entry:
                self.on_entry(arcname, self.files_processed, self.bytes_processed)

        return True

    def add_directory(self, directory: Path, arcname: str, source_filter: SourceFilter):
        if not self.add(directory, arcname):
            return

        try:
            entries = sorted(os.scandir(directory), key=lambda e: e.name)
        except FileNotFoundError:
            logger.warning(f"Directory vanished during archiving: {directory}")
            return

        for entry in entries:
            path = Path(entry.path)
            entry_arcname = f"{arcname}/{entry.name}"
            relative = Path(entry_arcname)

            try:
                is_dir = entry.is_dir(follow_symlinks=False)
            except OSError:
                is_dir = False

            if source_filter.should_exclude(relative, is_dir=is_dir):
                continue

            if is_dir:
                self.add_directory(path, entry_arcname, source_filter)
            elif entry.is_file(follow_symlinks=False) and not source_filter.should_include(relative):
                continue
            else:
                self.add(path, entry_arcname)


def create_archive(
    sources: List[Source],
    output_path: str,
    compression_level: int = 6,
    on_entry: Optional[Callable] = None
) -> ArchiveStats:
    """
    Create a tar.gz archive from the given sources.

    Args:
        sources: Sources to include; each lands in the archive under its basename
        output_path: Full path of the archive file to create
        compression_level: gzip level, 1 (fastest) to 9 (smallest)
        on_entry: Optional callback(name, files_processed, bytes_processed)
            invoked after each regular file is added

    Returns:
        ArchiveStats describing the written archive

    Raises:
        CompressionError: If no sources are given or the archive cannot be written
        ValueError: If compression_level is outside 1-9
    """
    if not sources:
        raise CompressionError("No source paths provided")

    if not 1 <= int(compression_level) <= 9:
        raise ValueError(
            f"Invalid compression level: {compression_level}. Valid options: 1-9"
        )

    try:
        with tarfile.open(output_path, 'w:gz', compresslevel=int(compression_level)) as tar:
            writer = _ArchiveWriter(tar, on_entry)

            for source in sources:
                source_path = Path(source.path).expanduser()

                # Re-check: the path may have been removed since validation
                if not source_path.exists():
                    logger.warning(f"Skipping missing path: {source.path}")
                    writer.skipped += 1
                    continue

                arcname = source_path.name
                if source_path.is_dir():
                    writer.add_directory(source_path, arcname, SourceFilter.for_source(source))
                    logger.debug(f"Added directory: {source_path}")
                else:
                    writer.add(source_path, arcname)
                    logger.debug(f"Added file: {source_path}")

    except OSError as e:
        # Clean up partial archive on failure
        _remove_partial(output_path)
        if e.errno is not None:
            raise
        raise CompressionError(f"Failed to create archive: {e}")
    except tarfile.TarError as e:
        _remove_partial(output_path)
        raise CompressionError(f"Failed to create archive: {e}")

    return ArchiveStats(
        path=output_path,
        size=get_archive_size(output_path),
        files_processed=writer.files_processed,
        bytes_processed=writer.bytes_processed,
        skipped=writer.skipped
    )


def _remove_partial(archive_path: str):
    if os.path.exists(archive_path):
        try:
            os.remove(archive_path)
        except OSError as e:
            logger.warning(f"Failed to remove partial archive {archive_path}: {e}")


def generate_archive_filename(config_name: str, now: Optional[datetime] = None) -> str:
    """
    Generate a standardized archive filename.

    Format: {config_name}-{YYYY-MM-DDTHH-MM-SS-fffZ}.tar.gz

    Args:
        config_name: Name of the backup configuration
        now: Timestamp to embed (default: current UTC time)

    Returns:
        Filename (without path)
    """
    now = now or datetime.now(timezone.utc)
    timestamp = now.strftime('%Y-%m-%dT%H-%M-%S-') + f"{now.microsecond // 1000:03d}Z"

    # Sanitize name (replace spaces and special chars with underscores)
    safe_name = "".join(
        c if c.isalnum() or c in ('-', '_') else '_'
        for c in config_name
    )

    return f"{safe_name}-{timestamp}.tar.gz"


def get_archive_size(archive_path: str) -> int:
    """
    Get the size of an archive file in bytes.

    Raises:
        CompressionError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except FileNotFoundError:
        raise CompressionError(f"Archive not found: {archive_path}")
    except OSError as e:
        raise CompressionError(f"Failed to get archive size: {e}")
