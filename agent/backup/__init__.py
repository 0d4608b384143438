"""
Backup module for the BackApp agent.

This module handles the core backup functionality including:
- Error classification and retry
- Source validation and exclusions
- Archive creation
- Execution strategies (archive, rsync, rclone)
- Local snapshot retention

Strategies are imported from their own modules (e.g. agent.backup.executor);
only the error types are re-exported here.
"""

from .errors import (
    BackupError,
    ConfigurationError,
    ToolNotFoundError,
    ToolError,
    ApiError,
    classify_error,
    is_retriable_error,
)

__all__ = [
    'BackupError',
    'ConfigurationError',
    'ToolNotFoundError',
    'ToolError',
    'ApiError',
    'classify_error',
    'is_retriable_error',
]
