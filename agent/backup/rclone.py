"""
Rclone backup method.

Single phase syncs the first source straight to the remote. Two-phase mode
first syncs into a dated local snapshot, then pushes that snapshot to the
remote, and finally prunes old snapshots.

Stages: preparing -> syncing | (local-sync -> remote-sync) -> completing
"""

import os
import logging
from typing import Dict, Any

from agent.models import BackupConfiguration, Source
from .base import BaseStrategy, today
from .errors import ConfigurationError
from .retention import prune_local_snapshots
from .sync_tools import RcloneTool, SyncStats


logger = logging.getLogger(__name__)


class RcloneStrategy(BaseStrategy):
    method = 'rclone'

    def __init__(self, *args, rclone_tool=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.rclone_tool = rclone_tool or RcloneTool()

    def validate(self, config: BackupConfiguration):
        super().validate(config)
        options = config.method_options()

        if config.credentials is None:
            raise ConfigurationError(
                'Cloud credentials not provided by server. '
                'Server must send temporary credentials for rclone backups.'
            )
        if not config.credentials.bucket:
            raise ConfigurationError('Bucket not configured in server credentials')
        if not config.user_id or not config.agent_id:
            raise ConfigurationError(
                'Backup configuration missing userId or agentId for remote path construction'
            )

        # Raises for unknown remote types
        RcloneTool.remote_path(options.get('remoteType') or 's3', config.credentials.bucket)

        if options.get('twoPhase') and not options.get('localBackupPath'):
            raise ConfigurationError('Two-phase rclone backups require localBackupPath')

    @staticmethod
    def remote_prefix(config: BackupConfiguration, date_tag: str) -> str:
        return (
            f"users/{config.user_id}/agents/{config.agent_id}/"
            f"configs/{config.id}/rclone/{date_tag}/"
        )

    def run(self, config: BackupConfiguration) -> SyncStats:
        options = config.method_options()
        remote_type = options.get('remoteType') or 's3'
        date_tag = today()

        destination = RcloneTool.remote_path(
            remote_type,
            config.credentials.bucket,
            self.remote_prefix(config, date_tag)
        )
        env = RcloneTool.credentials_env(remote_type, config.credentials)
        if config.credentials.expiration:
            logger.info(f"Using temporary credentials (expires {config.credentials.expiration})")

        if options.get('twoPhase'):
            return self._two_phase(config, options, destination, env, date_tag)

        # Single phase: direct sync to the remote
        logger.info(f"Syncing directly to remote: {destination}")
        self.progress('syncing', force=True)
        stats = self.rclone_tool.sync(
            config.sources,
            destination,
            self._sync_options(options, 'direct'),
            env=env,
            on_progress=self.progress_reporter('syncing')
        )
        logger.info(f"Rclone sync complete: {stats.files_transferred} files, {stats.total_size} bytes")
        return stats

    def _two_phase(self, config, options, destination, env, date_tag) -> SyncStats:
        logger.info('Two-phase backup mode enabled')
        base_path = os.path.expanduser(options['localBackupPath'])
        snapshot_dir = os.path.join(base_path, date_tag)
        os.makedirs(snapshot_dir, exist_ok=True)
        logger.info(f"Local backup directory: {snapshot_dir}")

        # Phase 1: Sync to the local snapshot
        self.progress('local-sync', force=True)
        stats = self.rclone_tool.sync(
            config.sources,
            snapshot_dir,
            self._sync_options(options, 'local'),
            on_progress=self.progress_reporter('local-sync')
        )
        logger.info(f"Local sync complete: {stats.files_transferred} files, {stats.total_size} bytes")

        # Phase 2: Push the snapshot to the remote
        if options.get('uploadToRemote', True) is not False:
            logger.info(f"Phase 2: Uploading to remote: {destination}")
            self.progress('remote-sync', force=True, files_processed=stats.files_transferred)
            stats = self.rclone_tool.sync(
                [Source(path=snapshot_dir)],
                destination,
                self._sync_options(options, 'remote'),
                env=env,
                on_progress=self.progress_reporter('remote-sync')
            )
            logger.info(
                f"Remote sync complete: {stats.files_transferred} files, {stats.total_size} bytes"
            )
        else:
            logger.info('Phase 2: Skipping remote upload (local-only backup)')

        keep_copies = int(options.get('keepLocalCopies') or 0)
        if keep_copies > 0:
            prune_local_snapshots(base_path, keep_copies)

        return stats

    def _sync_options(self, options: Dict[str, Any], mode: str) -> Dict[str, Any]:
        return {
            'mode': mode,
            'remoteType': options.get('remoteType') or 's3',
            'checksumVerification': options.get('checksumVerification', True),
            'delete': options.get('delete', False),
            'bandwidth': options.get('bandwidth') or self.config.options.get('bandwidth'),
            'storageClass': options.get('storageClass'),
        }
