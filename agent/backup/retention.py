"""
Retention for local snapshot directories.

Two-phase rclone backups leave one date-stamped directory per run under the
local backup path. Only the most recent copies are kept; deletion failures
are logged and never fail the backup.
"""

import re
import shutil
import logging
from pathlib import Path
from typing import List, Dict, Any


logger = logging.getLogger(__name__)

SNAPSHOT_NAME = re.compile(r'^\d{4}-\d{2}-\d{2}$')


def list_snapshots(base_path: str) -> List[Dict[str, Any]]:
    """
    List date-stamped snapshot directories, newest first.

    Args:
        base_path: Directory holding YYYY-MM-DD snapshot directories

    Returns:
        List of dicts with 'name', 'path' and 'modified' (mtime) keys
    """
    base = Path(base_path)
    if not base.exists():
        return []

    snapshots = []
    for entry in base.iterdir():
        if entry.is_dir() and SNAPSHOT_NAME.match(entry.name):
            snapshots.append({
                'name': entry.name,
                'path': str(entry),
                'modified': entry.stat().st_mtime
            })

    snapshots.sort(key=lambda s: s['modified'], reverse=True)
    return snapshots


def prune_local_snapshots(base_path: str, keep_copies: int) -> int:
    """
    Delete all but the keep_copies most recent snapshots.

    Args:
        base_path: Directory holding YYYY-MM-DD snapshot directories
        keep_copies: Number of snapshots to keep (by modification time)

    Returns:
        Number of snapshots deleted
    """
    if keep_copies <= 0:
        return 0

    try:
        snapshots = list_snapshots(base_path)
    except OSError as e:
        logger.warning(f"Failed to clean up old local backups: {e}")
        return 0

    to_delete = snapshots[keep_copies:]
    if not to_delete:
        logger.debug(
            f"No old local backups to clean up ({len(snapshots)} total, keeping {keep_copies})"
        )
        return 0

    logger.info(
        f"Cleaning up {len(to_delete)} old local backup(s), keeping {keep_copies} most recent"
    )

    deleted_count = 0
    for snapshot in to_delete:
        try:
            shutil.rmtree(snapshot['path'])
            deleted_count += 1
            logger.info(f"Deleted old local backup: {snapshot['name']}")
        except OSError as e:
            logger.warning(f"Failed to delete old local backup {snapshot['name']}: {e}")

    return deleted_count
