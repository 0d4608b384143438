"""
Cycle coordinator.

One cycle fetches the agent's configurations, keeps the ones that are due
and runs them one after another. Between cycles nothing is kept but the
server connection.
"""

import logging
from datetime import timedelta
from typing import Iterable, List, Tuple, Optional

from agent.api_client import ApiClient
from agent.backup.errors import classify_error
from agent.backup.executor import execute_backup
from agent.backup.retry import RetryPolicies
from agent.backup.sources import calculate_size
from agent.log_handlers import ServerLogHandler, NotifierLogHandler
from agent.models import BackupConfiguration, ExecutionResult
from agent.notifier import AgentConnection, NullNotifier, ProgressNotifier
from agent.schedule import filter_due_configs


logger = logging.getLogger(__name__)


class Agent:
    """
    The backup agent: connects to the server and runs backup cycles.
    """

    def __init__(self, cfg, api_client: Optional[ApiClient] = None, notifier=None, connect_websocket: bool = True):
        """
        Args:
            cfg: Validated agent configuration
            api_client: ApiClient (default: built from cfg)
            notifier: Progress notifier (default: connect over WebSocket on initialize)
            connect_websocket: Open the notification connection in initialize()
        """
        self.cfg = cfg
        self.api_client = api_client or ApiClient(cfg)
        self.notifier = notifier or NullNotifier()
        self.connect_websocket = connect_websocket and notifier is None
        self.policies = RetryPolicies.from_config(cfg)
        self.agent_info = {}
        self._handlers = []

    def initialize(self) -> bool:
        """
        Register with the server and open the notification connection.

        Returns:
            False if the server could not be reached
        """
        logger.info('Connecting to server...')
        try:
            heartbeat = self.api_client.send_heartbeat()
        except Exception as e:
            logger.error(f"Initialization failed: {classify_error(e).user_message}")
            logger.debug(f"Heartbeat error: {e!r}")
            return False

        self.agent_info = heartbeat.get('agent') or {}
        logger.info(f"Connected to server as: {self.agent_info.get('name') or 'Unknown'}")

        self._attach_handler(ServerLogHandler(self.api_client))

        if self.connect_websocket:
            connection = AgentConnection.from_config(
                self.cfg,
                self.agent_info.get('userId'),
                self.agent_info.get('id')
            )
            notifier = ProgressNotifier(connection, self.cfg.NOTIFY_QUEUE_SIZE)
            notifier.start()
            # Non-blocking: backups run without live updates until the socket is ready
            connection.connect()
            self.notifier = notifier
            self._attach_handler(NotifierLogHandler(notifier))

        return True

    def _attach_handler(self, handler: logging.Handler):
        logging.getLogger().addHandler(handler)
        self._handlers.append(handler)

    def run_cycle(self, force_ids: Iterable[str] = ()) -> List[Tuple[BackupConfiguration, ExecutionResult]]:
        """
        Run every configuration that is due.

        Args:
            force_ids: Configuration ids to run regardless of schedule

        Returns:
            List of (config, result) in execution order

        Raises:
            Exception: If the configurations cannot be fetched
        """
        force_ids = list(force_ids)

        try:
            logger.info('Fetching backup configurations...')
            configs = self.api_client.get_configs()
        except Exception as e:
            logger.error(f"Backup cycle failed: {classify_error(e).user_message}")
            raise

        if not configs:
            logger.info('No backup configurations assigned to this agent')
            return []

        logger.info(f"Found {len(configs)} backup configuration(s)")

        known_ids = {c.id for c in configs}
        for config_id in force_ids:
            if config_id not in known_ids:
                logger.warning(f"Configuration not assigned to this agent: {config_id}")

        due = filter_due_configs(
            configs,
            force_ids=force_ids,
            window=timedelta(seconds=self.cfg.DUE_WINDOW_SECONDS)
        )

        if not due:
            logger.info('No backups are due to run at this time')
            return []

        logger.info(f"{len(due)} backup(s) are due to run")

        results = []
        for config, reason in due:
            logger.info(f"Running backup: {config.name} - {reason}")
            result = execute_backup(
                config,
                self.api_client,
                self.notifier,
                policies=self.policies,
                cfg=self.cfg
            )
            results.append((config, result))

        self._log_summary(results)
        return results

    def _log_summary(self, results):
        succeeded = sum(1 for _, r in results if r.success)
        failed = len(results) - succeeded

        logger.info('Backup summary:')
        for config, result in results:
            if result.success:
                logger.info(
                    f"  OK {config.name}: {result.size / 1024 / 1024:.2f} MB in {result.duration:.2f}s"
                )
            else:
                logger.info(f"  FAILED {config.name}: {result.error}")
        logger.info(f"Total: {succeeded} succeeded, {failed} failed")

    def process_size_requests(self) -> int:
        """
        Answer pending size assessment requests.

        Returns:
            Number of requests processed

        Raises:
            Exception: If pending requests cannot be fetched
        """
        size_requests = self.api_client.get_size_requests()
        if not size_requests:
            logger.debug('No pending size assessment requests')
            return 0

        logger.info(f"Processing {len(size_requests)} size assessment request(s)")

        for request in size_requests:
            try:
                if not request.sources:
                    raise ValueError('No source paths in size request')
                total_bytes, total_files = calculate_size(request.sources)
            except Exception as e:
                logger.warning(f"Size assessment {request.id} failed: {e}")
                self._report_size(request.id, 0, 0, error=str(e))
                continue

            logger.info(
                f"Size assessment {request.id}: {total_files} files, "
                f"{total_bytes / 1024 / 1024:.2f} MB"
            )
            self._report_size(request.id, total_bytes, total_files)

        return len(size_requests)

    def _report_size(self, request_id, total_bytes, total_files, error=None):
        try:
            self.api_client.report_size(request_id, total_bytes, total_files, error=error)
        except Exception as e:
            logger.error(f"Failed to report size assessment {request_id}: {e}")

    def cleanup(self):
        """Detach log mirroring and close the notification connection."""
        root = logging.getLogger()
        for handler in self._handlers:
            root.removeHandler(handler)
            handler.close()
        self._handlers = []

        self.notifier.close()
        self.notifier = NullNotifier()
        self.api_client.close()
