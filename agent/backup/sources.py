"""
Source handling for backup operations.

- validate_sources: fail fast on missing or unreadable paths
- SourceFilter: include/exclude glob matching for archive walks
- collect_exclusions: exclude patterns handed to sync tools
- calculate_size: size assessment of a set of sources
"""

import os
import errno
import logging
from pathlib import Path
from typing import List, Iterable, Tuple
from fnmatch import fnmatch

from agent.models import Source


logger = logging.getLogger(__name__)

DEFAULT_EXCLUSIONS = ['node_modules/', '.git/', '*.log']


def validate_sources(sources: Iterable[Source]):
    """
    Check that every source exists and is readable.

    Args:
        sources: Sources of a backup configuration

    Raises:
        FileNotFoundError: If a path does not exist
        PermissionError: If a path cannot be read
    """
    for source in sources:
        path = os.path.expanduser(source.path)

        if not os.path.exists(path):
            raise FileNotFoundError(errno.ENOENT, 'Source path does not exist', source.path)

        if not os.access(path, os.R_OK):
            raise PermissionError(errno.EACCES, 'Cannot access source path', source.path)


def collect_exclusions(sources: Iterable[Source], defaults: List[str] = None) -> List[str]:
    """
    Merge the default exclusions with every source's own patterns.

    Args:
        sources: Sources of a backup configuration
        defaults: Always-on patterns (default: node_modules/, .git/, *.log)

    Returns:
        Ordered list of unique patterns
    """
    exclusions = list(DEFAULT_EXCLUSIONS if defaults is None else defaults)

    for source in sources:
        for pattern in source.exclude_patterns:
            if pattern not in exclusions:
                exclusions.append(pattern)

    return exclusions


class SourceFilter:
    """
    Glob matching for paths inside one source.

    Patterns ending in '/' match directories only. Include patterns, when
    given, restrict regular files to the ones that match.
    """

    def __init__(self, exclude_patterns: List[str] = None, include_patterns: List[str] = None):
        self.exclude_patterns = exclude_patterns or []
        self.include_patterns = include_patterns or []

    @staticmethod
    def _matches(path: Path, pattern: str, is_dir: bool) -> bool:
        if pattern.endswith('/'):
            if not is_dir:
                return False
            pattern = pattern.rstrip('/')

        path_str = str(path)
        if fnmatch(path_str, pattern) or fnmatch(path.name, pattern):
            return True
        # Also match against relative path patterns
        if pattern.startswith('**/') and fnmatch(path.name, pattern[3:]):
            return True
        return False

    def should_exclude(self, path: Path, is_dir: bool = False) -> bool:
        """
        Check if a path should be excluded based on exclude patterns.

        Args:
            path: Path to check (relative to the source root or absolute)
            is_dir: Whether the path is a directory

        Returns:
            True if path matches any exclude pattern, False otherwise
        """
        return any(self._matches(path, p, is_dir) for p in self.exclude_patterns)

    def should_include(self, path: Path) -> bool:
        """Check a regular file against the include patterns (all files when none are set)."""
        if not self.include_patterns:
            return True
        return any(self._matches(path, p, False) for p in self.include_patterns)

    @classmethod
    def for_source(cls, source: Source) -> 'SourceFilter':
        return cls(source.exclude_patterns, source.include_patterns)


def _walk_size(root: Path, source_filter: SourceFilter) -> Tuple[int, int]:
    total_bytes = 0
    total_files = 0

    for current, dirs, files in os.walk(root, onerror=lambda e: logger.debug(f"Skipping {e.filename}: {e}")):
        current_path = Path(current)
        dirs[:] = [d for d in dirs if not source_filter.should_exclude(current_path / d, is_dir=True)]

        for name in files:
            file_path = current_path / name
            if source_filter.should_exclude(file_path):
                continue
            try:
                total_bytes += file_path.stat().st_size
                total_files += 1
            except OSError as e:
                logger.debug(f"Skipping {file_path}: {e}")

    return total_bytes, total_files


def calculate_size(sources: Iterable[Source]) -> Tuple[int, int]:
    """
    Calculate the total size and file count of a set of sources.

    Entries excluded by default from backups (node_modules, .git, *.log) are
    not counted. Sources that cannot be read are logged and skipped.

    Args:
        sources: Sources to measure

    Returns:
        Tuple of (total_bytes, total_files)
    """
    total_bytes = 0
    total_files = 0

    for source in sources:
        path = Path(source.path).expanduser()
        source_filter = SourceFilter(collect_exclusions([source]))

        try:
            if path.is_file():
                total_bytes += path.stat().st_size
                total_files += 1
            elif path.is_dir():
                size, count = _walk_size(path, source_filter)
                total_bytes += size
                total_files += count
            else:
                raise FileNotFoundError(errno.ENOENT, 'Source path does not exist', source.path)
        except OSError as e:
            logger.warning(f"Failed to calculate size for {source.path}: {e}")

    return total_bytes, total_files
