"""
Rsync backup method: delta copy into a local replica, then an optional
upload of the replica to object storage.

Stages: preparing -> rsync -> uploading (optional) -> completing
"""

import os
import logging
from typing import Dict, Any

from agent.models import BackupConfiguration, Source
from .base import BaseStrategy, today
from .errors import ConfigurationError
from .sync_tools import RsyncTool, RcloneTool, SyncStats, UPLOADERS, create_uploader


logger = logging.getLogger(__name__)

DEFAULT_STORAGE_CLASS = 'STANDARD_IA'


class RsyncStrategy(BaseStrategy):
    method = 'rsync'

    def __init__(self, *args, rsync_tool=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.rsync_tool = rsync_tool or RsyncTool()

    def validate(self, config: BackupConfiguration):
        super().validate(config)
        options = config.method_options()

        if not options.get('localReplica'):
            raise ConfigurationError(
                'Rsync requires a local replica path (options.rsync.localReplica)'
            )

        if options.get('uploadToS3', True):
            if not self._bucket(config, options):
                raise ConfigurationError('S3 bucket not configured for rsync upload')
            uploader = options.get('uploader') or 'aws'
            if uploader not in UPLOADERS:
                raise ConfigurationError(
                    f"Invalid uploader: {uploader}. Valid options: {list(UPLOADERS)}"
                )

    def run(self, config: BackupConfiguration) -> SyncStats:
        options = config.method_options()
        replica = os.path.expanduser(options['localReplica'])

        if not os.path.isdir(replica):
            logger.info(f"Creating local replica directory: {replica}")
            os.makedirs(replica, exist_ok=True)

        # Step 1: Sync sources into the replica
        self.progress('rsync', force=True)
        logger.info(f"Syncing {len(config.sources)} source(s) to {replica}")
        stats = self.rsync_tool.sync(
            config.sources,
            replica,
            {'delete': options.get('delete', False)},
            on_progress=self.progress_reporter('rsync')
        )
        logger.info(f"Rsync complete: {stats.files_transferred} files, {stats.total_size} bytes")

        # Step 2: Upload the replica
        if options.get('uploadToS3', True):
            self._upload(config, options, replica, stats)
        else:
            logger.info('Skipping upload (local-only backup)')

        return stats

    def _upload(self, config: BackupConfiguration, options: Dict[str, Any], replica: str, stats: SyncStats):
        uploader_name = options.get('uploader') or 'aws'
        bucket = self._bucket(config, options)
        prefix = self.upload_prefix(options)

        if uploader_name == 'rclone':
            destination = RcloneTool.remote_path('s3', bucket, prefix)
            env = RcloneTool.credentials_env('s3', config.credentials)
        else:
            destination = f"s3://{bucket}/{prefix}"
            env = config.credentials.as_env() if config.credentials else None

        if config.credentials and config.credentials.expiration:
            logger.info(f"Using temporary credentials (expires {config.credentials.expiration})")

        self.progress(
            'uploading',
            force=True,
            files_processed=stats.files_transferred,
            bytes_processed=0,
            total_bytes=stats.total_size
        )
        logger.info(f"Uploading replica to {destination} with {uploader_name}")

        uploader = create_uploader(uploader_name, config.credentials)
        upload_options = {
            'storageClass': options.get('storageClass') or DEFAULT_STORAGE_CLASS,
            'delete': options.get('delete', False),
            'remoteType': 's3',
        }
        upload_stats = self.call_with_retry(
            lambda: uploader.sync(
                [Source(path=replica)],
                destination,
                upload_options,
                env=env,
                on_progress=self.progress_reporter('uploading', total_bytes=stats.total_size)
            ),
            self.policies.upload,
            'S3 upload'
        )
        logger.info(f"Upload complete: {upload_stats.files_transferred} files uploaded")

    @staticmethod
    def _bucket(config: BackupConfiguration, options: Dict[str, Any]):
        if options.get('s3Bucket'):
            return options['s3Bucket']
        return config.credentials.bucket if config.credentials else None

    @staticmethod
    def upload_prefix(options: Dict[str, Any]) -> str:
        """Key prefix for this run: [<s3Prefix>/]rsync/<YYYY-MM-DD>/"""
        prefix = (options.get('s3Prefix') or '').strip('/')
        base = f"{prefix}/" if prefix else ''
        return f"{base}rsync/{today()}/"
