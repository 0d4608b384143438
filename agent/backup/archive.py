"""
Archive backup method: one tar.gz per run, uploaded through a pre-signed URL.

Stages: preparing -> archiving -> uploading -> completing
"""

import os
import logging

from agent.models import BackupConfiguration
from .base import BaseStrategy
from .compression import create_archive, generate_archive_filename
from .errors import ApiError
from .sync_tools import SyncStats


logger = logging.getLogger(__name__)


class ArchiveStrategy(BaseStrategy):
    method = 'archive'

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.filename = None
        self.archive_path = None

    def backup_filename(self, config: BackupConfiguration) -> str:
        self.filename = generate_archive_filename(config.name)
        self.archive_path = os.path.join(self.cfg.TEMP_DIR, self.filename)
        return self.filename

    def run(self, config: BackupConfiguration) -> SyncStats:
        upload_url = (self.start_response.get('upload') or {}).get('url')
        if not upload_url:
            raise ApiError('Server did not return an upload URL')

        compression_level = config.options.get('compressionLevel', 6)
        os.makedirs(self.cfg.TEMP_DIR, exist_ok=True)

        try:
            # Step 1: Create archive
            self.progress('archiving', force=True)
            archive = create_archive(
                config.sources,
                self.archive_path,
                compression_level,
                on_entry=lambda name, files, nbytes: self.progress(
                    'archiving',
                    files_processed=files,
                    bytes_processed=nbytes,
                    current_file=name
                )
            )
            self.progress(
                'archiving',
                force=True,
                files_processed=archive.files_processed,
                bytes_processed=archive.bytes_processed
            )
            logger.info(
                f"Archive created: {self.filename} "
                f"({archive.size / 1024 / 1024:.2f} MB, {archive.files_processed} files)"
            )

            # Step 2: Upload via pre-signed URL
            self.progress(
                'uploading',
                force=True,
                files_processed=archive.files_processed,
                bytes_processed=0,
                total_bytes=archive.size
            )
            self.call_with_retry(
                lambda: self.api_client.upload_file(upload_url, self.archive_path),
                self.policies.upload,
                'upload'
            )
            logger.info(f"Uploaded {self.filename} to {(self.start_response.get('upload') or {}).get('s3Path', 'storage')}")

            return SyncStats(files_transferred=archive.files_processed, total_size=archive.size)

        finally:
            self._cleanup()

    def _cleanup(self):
        """Remove the local archive."""
        if self.archive_path and os.path.exists(self.archive_path):
            try:
                os.remove(self.archive_path)
                logger.debug(f"Cleaned up archive: {self.archive_path}")
            except OSError as e:
                logger.warning(f"Failed to cleanup archive {self.archive_path}: {e}")
