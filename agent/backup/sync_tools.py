"""
Sync tools behind the rsync and rclone backup methods.

Each tool exposes the same capability:

    sync(sources, destination, options, env=None, on_progress=None) -> SyncStats

so strategies pick a backend by name from configuration rather than by
subclassing. Command line tools run through run_tool(), which streams stdout
line by line to a progress parser while a reader thread drains stderr.
"""

import os
import re
import logging
import threading
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Dict, Any, Optional, Callable, Tuple

import boto3
from botocore.exceptions import ClientError

from agent.models import Source, Credentials
from .errors import BackupError, ConfigurationError, ToolNotFoundError, ToolError
from .sources import collect_exclusions


logger = logging.getLogger(__name__)

DECIMAL_UNITS = {'': 1, 'K': 1000, 'M': 1000 ** 2, 'G': 1000 ** 3, 'T': 1000 ** 4, 'P': 1000 ** 5}
BINARY_UNITS = {'': 1, 'K': 1024, 'M': 1024 ** 2, 'G': 1024 ** 3, 'T': 1024 ** 4, 'P': 1024 ** 5}

# rclone connection strings per remote type; bucket/path is appended
REMOTE_BACKENDS = {
    's3': ':s3,env_auth=true:',
    'wasabi': ':s3,provider=Wasabi,endpoint=s3.wasabisys.com,env_auth=true:',
    'b2': ':b2:',
    'gcs': ':gcs,env_auth=true:',
    'azure': ':azureblob:',
}
S3_COMPATIBLE = ('s3', 'wasabi')


class StorageError(BackupError):
    """Raised when an object storage operation fails."""

    def __init__(self, message, status_code=None):
        self.status_code = status_code
        super().__init__(message)


@dataclass
class SyncStats:
    files_transferred: int = 0
    total_size: int = 0


def _parse_number(value: str, unit: str = '', units: Dict[str, int] = DECIMAL_UNITS) -> int:
    number = float(value.replace(',', ''))
    return int(round(number * units.get((unit or '').upper()[:1], 1)))


def parse_rsync_stats(output: str) -> SyncStats:
    """
    Parse the --stats block printed by rsync.

    Reads "Number of files" and "Total file size"; falls back to the
    "sent N bytes" counter when the total size is absent. Human-readable
    suffixes (K, M, G, ...) are powers of 1000.
    """
    stats = SyncStats()

    files_match = re.search(r'Number of files:\s*([\d.,]+)([KMGTP]?)', output)
    if files_match:
        stats.files_transferred = _parse_number(files_match.group(1), files_match.group(2))

    size_match = re.search(r'Total file size:\s*([\d.,]+)([KMGTP]?)\s*bytes', output)
    if size_match:
        stats.total_size = _parse_number(size_match.group(1), size_match.group(2))

    if stats.total_size == 0:
        sent_match = re.search(r'sent\s+([\d.,]+)([KMGTP]?)\s+bytes', output)
        if sent_match:
            stats.total_size = _parse_number(sent_match.group(1), sent_match.group(2))

    return stats


RCLONE_FILES = re.compile(r'Transferred:\s+(\d+)\s*/\s*(\d+),')
RCLONE_BYTES = re.compile(r'Transferred:\s+([\d.]+)\s*([kKMGTP]i?)?B(?:ytes)?\b')


def parse_rclone_stats(output: str) -> SyncStats:
    """
    Parse rclone's stats output, using the last (final) report.

    Handles both "123.456 MBytes" and "123.456 MiB" byte counters; units are
    powers of 1024.
    """
    stats = SyncStats()

    files_matches = RCLONE_FILES.findall(output)
    if files_matches:
        stats.files_transferred = int(files_matches[-1][0])

    bytes_matches = RCLONE_BYTES.findall(output)
    if bytes_matches:
        value, unit = bytes_matches[-1]
        stats.total_size = _parse_number(value, unit, BINARY_UNITS)

    return stats


def run_tool(
    tool: str,
    args: List[str],
    env: Optional[Dict[str, str]] = None,
    on_line: Optional[Callable[[str], None]] = None,
    install_hint: Optional[str] = None
) -> Tuple[str, str]:
    """
    Run an external command to completion.

    Args:
        tool: Executable name, resolved on PATH
        args: Command arguments
        env: Extra environment variables layered over the current environment
        on_line: Optional callback invoked with each stdout line as it arrives
        install_hint: Message appended when the tool is not installed

    Returns:
        Tuple of (stdout, stderr)

    Raises:
        ToolNotFoundError: If the executable cannot be found
        ToolError: If the command exits with a non-zero status
    """
    command = [tool] + list(args)
    logger.debug(f"Executing: {' '.join(command)}")

    process_env = None
    if env:
        process_env = dict(os.environ)
        process_env.update(env)

    try:
        process = subprocess.Popen(
            command,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            errors='replace',
            env=process_env
        )
    except FileNotFoundError:
        raise ToolNotFoundError(tool, install_hint)

    stderr_chunks = []
    stdout_lines = []

    with process:
        reader = threading.Thread(
            target=lambda: stderr_chunks.append(process.stderr.read()),
            daemon=True
        )
        reader.start()

        try:
            for line in process.stdout:
                stdout_lines.append(line)
                if on_line:
                    try:
                        on_line(line.rstrip('\n'))
                    except Exception as e:
                        logger.debug(f"Progress parser failed on line {line!r}: {e}")
        except BaseException:
            process.kill()
            raise
        finally:
            reader.join()

        returncode = process.wait()

    stdout = ''.join(stdout_lines)
    stderr = ''.join(stderr_chunks)

    if returncode != 0:
        logger.debug(f"{tool} exited with {returncode}. stdout:\n{stdout}\nstderr:\n{stderr}")
        raise ToolError(tool, returncode, stderr, stdout)

    return stdout, stderr


class RsyncTool:
    """Delta copy of local sources into a local replica directory."""

    name = 'rsync'
    XFR = re.compile(r'xfr#(\d+)')
    FILE_LIST = re.compile(r'([\d,]+)\s+files')

    def build_args(self, sources: List[Source], destination: str, options: Dict[str, Any]) -> List[str]:
        args = [
            '--archive',
            '--hard-links',
            '--human-readable',
            '--stats',
            '--progress',
        ]

        if options.get('delete'):
            args.append('--delete')

        for pattern in collect_exclusions(sources):
            args.append(f'--exclude={pattern}')

        # Trailing slash copies the contents, not the folder itself
        for source in sources:
            path = os.path.expanduser(source.path)
            args.append(path if path.endswith('/') else f'{path}/')

        args.append(destination)
        return args

    def sync(self, sources, destination, options, env=None, on_progress=None) -> SyncStats:
        current = {'file': None}

        def on_line(line):
            if not on_progress:
                return
            xfr = self.XFR.search(line)
            if xfr:
                on_progress(int(xfr.group(1)), 0, current['file'])
                return
            listing = self.FILE_LIST.search(line)
            if listing:
                on_progress(int(listing.group(1).replace(',', '')), 0, None)
                return
            stripped = line.strip()
            if stripped and not stripped[0].isdigit() and ':' not in stripped:
                current['file'] = stripped

        stdout, _ = run_tool(
            self.name,
            self.build_args(sources, destination, options),
            env=env,
            on_line=on_line,
            install_hint='Please install rsync.'
        )
        return parse_rsync_stats(stdout)


class AwsCliSyncTool:
    """Upload of a local directory with `aws s3 sync`."""

    name = 'aws'

    def build_args(self, sources: List[Source], destination: str, options: Dict[str, Any]) -> List[str]:
        args = [
            's3', 'sync',
            os.path.expanduser(sources[0].path),
            destination,
            f"--storage-class={options.get('storageClass') or 'STANDARD_IA'}",
        ]
        if options.get('delete'):
            args.append('--delete')
        return args

    def sync(self, sources, destination, options, env=None, on_progress=None) -> SyncStats:
        uploaded = {'count': 0}

        def on_line(line):
            if line.startswith('upload:'):
                uploaded['count'] += 1
                if on_progress:
                    on_progress(uploaded['count'], 0, line.split(' to ')[0][len('upload:'):].strip())

        run_tool(
            self.name,
            self.build_args(sources, destination, options),
            env=env,
            on_line=on_line,
            install_hint='Please install AWS CLI v2.'
        )
        return SyncStats(files_transferred=uploaded['count'])


class RcloneTool:
    """`rclone sync` between local paths and cloud remotes."""

    name = 'rclone'

    @staticmethod
    def remote_path(remote_type: str, bucket: str, prefix: str = '') -> str:
        """
        Build an on-the-fly rclone remote for a bucket and prefix.

        Raises:
            ConfigurationError: If the remote type is not supported
        """
        if remote_type not in REMOTE_BACKENDS:
            raise ConfigurationError(
                f"Invalid remote type: {remote_type}. Valid options: {list(REMOTE_BACKENDS.keys())}"
            )
        return f"{REMOTE_BACKENDS[remote_type]}{bucket}/{prefix.lstrip('/')}"

    @staticmethod
    def credentials_env(remote_type: str, credentials: Optional[Credentials]) -> Dict[str, str]:
        """Environment variables carrying temporary credentials for a remote type."""
        if credentials is None:
            return {}
        if remote_type == 'b2':
            return {
                'RCLONE_B2_ACCOUNT': credentials.access_key_id,
                'RCLONE_B2_KEY': credentials.secret_access_key,
            }
        if remote_type == 'azure':
            return {
                'RCLONE_AZUREBLOB_ACCOUNT': credentials.access_key_id,
                'RCLONE_AZUREBLOB_KEY': credentials.secret_access_key,
            }
        return credentials.as_env()

    def build_args(self, sources: List[Source], destination: str, options: Dict[str, Any]) -> List[str]:
        mode = options.get('mode', 'direct')
        remote_type = options.get('remoteType') or 's3'

        args = [
            'sync',
            '--stats', '1s',
            '--progress',
        ]

        # Checksums are skipped on local-only passes for speed
        if options.get('checksumVerification', True) and mode != 'local':
            args.append('--checksum')

        if options.get('delete'):
            args.append('--delete-excluded')

        if options.get('bandwidth'):
            args.extend(['--bwlimit', f"{options['bandwidth']}k"])

        if options.get('storageClass') and mode != 'local' and remote_type in S3_COMPATIBLE:
            args.extend(['--s3-storage-class', options['storageClass']])

        for pattern in collect_exclusions(sources):
            args.extend(['--exclude', pattern])

        # rclone syncs one source per invocation
        if len(sources) > 1:
            logger.warning(
                'Multiple sources detected. Currently syncing first source only. '
                'Consider using a wrapper directory.'
            )
        args.append(os.path.expanduser(sources[0].path))
        args.append(destination)
        return args

    def sync(self, sources, destination, options, env=None, on_progress=None) -> SyncStats:
        def on_line(line):
            match = RCLONE_FILES.search(line)
            if match and on_progress:
                on_progress(int(match.group(1)), 0, None)

        stdout, stderr = run_tool(
            self.name,
            self.build_args(sources, destination, options),
            env=env,
            on_line=on_line,
            install_hint='Please install rclone: https://rclone.org/install/'
        )
        return parse_rclone_stats(stdout + '\n' + stderr)


class S3SyncTool:
    """
    In-process upload of a local directory to S3 with boto3.

    Mirrors `aws s3 sync`: objects whose size already matches are skipped,
    and with the delete option objects missing locally are removed.
    """

    name = 's3'

    def __init__(self, credentials: Optional[Credentials] = None, client=None):
        if client is not None:
            self.s3_client = client
            return

        kwargs = {}
        if credentials is not None:
            kwargs = {
                'aws_access_key_id': credentials.access_key_id,
                'aws_secret_access_key': credentials.secret_access_key,
                'aws_session_token': credentials.session_token,
                'region_name': credentials.region,
            }
        try:
            self.s3_client = boto3.client('s3', **kwargs)
        except Exception as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    @staticmethod
    def split_destination(destination: str) -> Tuple[str, str]:
        if not destination.startswith('s3://'):
            raise ConfigurationError(f"Invalid S3 destination: {destination}")
        bucket, _, prefix = destination[len('s3://'):].partition('/')
        return bucket, prefix

    def _existing_objects(self, bucket: str, prefix: str) -> Dict[str, int]:
        objects = {}
        paginator = self.s3_client.get_paginator('list_objects_v2')
        for page in paginator.paginate(Bucket=bucket, Prefix=prefix):
            for obj in page.get('Contents', []):
                objects[obj['Key']] = obj['Size']
        return objects

    def sync(self, sources, destination, options, env=None, on_progress=None) -> SyncStats:
        """
        Mirror the first source into the bucket prefix.

        S3 responses are raised as StorageError carrying the HTTP status.
        Connection and timeout errors from botocore propagate unchanged so
        they classify as network failures and are retried.
        """
        bucket, prefix = self.split_destination(destination)
        root = Path(sources[0].path).expanduser()
        storage_class = options.get('storageClass') or 'STANDARD_IA'
        stats = SyncStats()

        try:
            existing = self._existing_objects(bucket, prefix)
            local_keys = set()

            for path in sorted(root.rglob('*')):
                if not path.is_file():
                    continue
                key = prefix + path.relative_to(root).as_posix()
                local_keys.add(key)
                size = path.stat().st_size

                if existing.get(key) == size:
                    continue

                self.s3_client.upload_file(
                    str(path), bucket, key,
                    ExtraArgs={'StorageClass': storage_class}
                )
                stats.files_transferred += 1
                stats.total_size += size
                if on_progress:
                    on_progress(stats.files_transferred, stats.total_size, str(path))

            if options.get('delete'):
                for key in set(existing) - local_keys:
                    self.s3_client.delete_object(Bucket=bucket, Key=key)
                    logger.debug(f"Deleted s3://{bucket}/{key}")

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            status = e.response.get('ResponseMetadata', {}).get('HTTPStatusCode')
            raise StorageError(f"S3 sync failed ({error_code}): {e}", status_code=status)

        return stats


UPLOADERS = ('aws', 'rclone', 's3')


def create_uploader(name: str, credentials: Optional[Credentials] = None):
    """
    Factory for the tool that uploads a local replica to object storage.

    Args:
        name: 'aws', 'rclone' or 's3'
        credentials: Temporary credentials (used directly by the boto3 uploader)

    Raises:
        ConfigurationError: If name is not a known uploader
    """
    if name == 'aws':
        return AwsCliSyncTool()
    elif name == 'rclone':
        return RcloneTool()
    elif name == 's3':
        return S3SyncTool(credentials)
    else:
        raise ConfigurationError(f"Invalid uploader: {name}. Valid options: {list(UPLOADERS)}")
