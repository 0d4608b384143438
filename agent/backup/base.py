"""
Common execution flow shared by every backup method.

A strategy run always follows the same envelope:

1. Notify backup_started, emit 'preparing'
2. Validate sources and method options (no network traffic yet)
3. Open a backup log on the server (POST /backup/start)
4. Run the method body
5. Emit 'completing' and close the log (POST /backup/complete)
6. Notify backup_completed

Any failure is classified, pushed as backup_failed and, once a log exists,
reported to the server. execute() never raises.
"""

import time
import logging
from datetime import datetime, timezone
from typing import Optional, Callable

from agent.config import Config
from agent.models import BackupConfiguration, ExecutionResult, ProgressEvent
from agent.notifier import NullNotifier
from .errors import ConfigurationError, classify_error
from .retry import RetryPolicies, RetryPolicy, retry_with_backoff
from .sources import validate_sources
from .sync_tools import SyncStats


logger = logging.getLogger(__name__)


class ProgressThrottle:
    """Rate limiter for progress events within a stage."""

    def __init__(self, interval: float = 1.0, clock: Callable[[], float] = time.monotonic):
        self.interval = interval
        self.clock = clock
        self._last = None

    def ready(self) -> bool:
        """Return True (and start a new interval) if an event may be sent now."""
        now = self.clock()
        if self._last is None or now - self._last >= self.interval:
            self._last = now
            return True
        return False

    def mark(self):
        self._last = self.clock()


class BaseStrategy:
    """
    Base class for backup methods.

    Subclasses set `method` and implement run(), returning SyncStats for the
    data they moved. They may extend validate() and backup_filename().
    """

    method = None

    def __init__(
        self,
        api_client,
        notifier=None,
        policies: Optional[RetryPolicies] = None,
        cfg: Optional[Config] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        """
        Args:
            api_client: ApiClient used to open and close the server-side backup log
            notifier: ProgressNotifier (default: NullNotifier)
            policies: Retry policies for network calls
            cfg: Agent configuration
            sleep: Wait function used between retries
        """
        self.api_client = api_client
        self.notifier = notifier or NullNotifier()
        self.cfg = cfg or Config()
        self.policies = policies or RetryPolicies.from_config(self.cfg)
        self.sleep = sleep

        self.config = None
        self.log_id = None
        self.start_response = {}
        self.throttle = ProgressThrottle(self.cfg.PROGRESS_INTERVAL)

    def execute(self, config: BackupConfiguration) -> ExecutionResult:
        """
        Run one backup of the given configuration.

        Args:
            config: Configuration to back up

        Returns:
            ExecutionResult describing success or the classified failure
        """
        started = time.monotonic()
        self.config = config
        self.log_id = None
        self.start_response = {}

        logger.info(f"Starting {self.method} backup: {config.name} ({config.id})")
        self.notifier.backup_started(config.id, config.name)

        try:
            self.progress('preparing', force=True)
            self.validate(config)

            filename = self.backup_filename(config)
            self.start_response = self.call_with_retry(
                lambda: self.api_client.start_backup(config.id, filename),
                self.policies.default,
                'startBackup'
            ) or {}
            self.log_id = self.start_response.get('logId')
            logger.info(f"Backup log created: {self.log_id}")

            stats = self.run(config)

            self.progress(
                'completing',
                force=True,
                files_processed=stats.files_transferred,
                bytes_processed=stats.total_size
            )
            duration = time.monotonic() - started
            self.call_with_retry(
                lambda: self.api_client.complete_backup(
                    self.log_id,
                    True,
                    size=stats.total_size,
                    files=stats.files_transferred,
                    duration=duration
                ),
                self.policies.default,
                'completeBackup'
            )

        except Exception as e:
            return self._fail(config, e, time.monotonic() - started)

        result = ExecutionResult(
            success=True,
            size=stats.total_size,
            files_transferred=stats.files_transferred,
            duration=duration
        )
        logger.info(
            f"Backup completed: {config.name} "
            f"({stats.files_transferred} files, {stats.total_size} bytes in {duration:.2f}s)"
        )
        self.notifier.backup_completed(config.id, config.name, {
            'size': result.size,
            'duration': round(result.duration, 2),
            'filesTransferred': result.files_transferred,
        })
        return result

    def validate(self, config: BackupConfiguration):
        """
        Check the configuration before anything is sent to the server.

        Raises:
            ConfigurationError: If no sources are configured
            FileNotFoundError, PermissionError: If a source is unusable
        """
        if not config.sources:
            raise ConfigurationError('No source paths configured')
        validate_sources(config.sources)

    def backup_filename(self, config: BackupConfiguration) -> str:
        """Name under which the server records this run."""
        return f"{self.method}-{today()}.log"

    def run(self, config: BackupConfiguration) -> SyncStats:
        raise NotImplementedError

    def progress(self, stage: str, force: bool = False, **fields):
        """
        Emit a progress event for the current configuration.

        Args:
            stage: Stage name (preparing, archiving, uploading, ...)
            force: Bypass the throttle (stage transitions)
            **fields: ProgressEvent fields (files_processed, bytes_processed, ...)
        """
        if force:
            self.throttle.mark()
        elif not self.throttle.ready():
            return

        event = ProgressEvent(stage=stage, **fields)
        self.notifier.backup_progress(self.config.id, self.config.name, event)

    def progress_reporter(self, stage: str, **extra) -> Callable:
        """Callback for SyncTool.sync(on_progress=...) bound to a stage."""
        def report(files, nbytes, current_file=None):
            self.progress(
                stage,
                files_processed=files,
                bytes_processed=nbytes,
                current_file=current_file,
                **extra
            )
        return report

    def call_with_retry(self, operation: Callable, policy: RetryPolicy, description: str):
        def on_retry(attempt, error, delay):
            logger.warning(
                f"Retry {attempt}/{policy.max_attempts} for {description} after {delay:.1f}s: {error}"
            )

        return retry_with_backoff(operation, policy, on_retry=on_retry, sleep=self.sleep)

    def _fail(self, config: BackupConfiguration, error: Exception, duration: float) -> ExecutionResult:
        classification = classify_error(error)

        logger.error(
            f"{self.method.capitalize()} backup failed ({classification.category}): "
            f"{classification.user_message}"
        )
        logger.debug(f"Failure detail for {config.name}: {error!r}", exc_info=error)

        self.notifier.backup_failed(config.id, config.name, classification)

        if self.log_id:
            try:
                self.call_with_retry(
                    lambda: self.api_client.complete_backup(
                        self.log_id,
                        False,
                        error=classification.user_message,
                        duration=duration
                    ),
                    self.policies.failure_report,
                    'failure reporting'
                )
            except Exception as report_error:
                logger.error(f"Failed to report backup failure to server: {report_error}")

        return ExecutionResult.failed(classification, duration)


def today() -> str:
    """Current UTC date as YYYY-MM-DD."""
    return datetime.now(timezone.utc).strftime('%Y-%m-%d')
