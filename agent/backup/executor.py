"""
Backup executor - dispatches a configuration to its backup method.

Methods:
- archive: tar.gz uploaded through a pre-signed URL
- rsync: local replica, optionally uploaded to object storage
- rclone: direct or two-phase sync to a cloud remote
"""

from agent.models import BackupConfiguration, ExecutionResult
from .archive import ArchiveStrategy
from .rsync import RsyncStrategy
from .rclone import RcloneStrategy
from .errors import ConfigurationError


STRATEGIES = {
    'archive': ArchiveStrategy,
    'rsync': RsyncStrategy,
    'rclone': RcloneStrategy,
}


def create_strategy(method: str, api_client, notifier=None, policies=None, cfg=None, **kwargs):
    """
    Factory function to create the strategy for a backup method.

    Args:
        method: 'archive', 'rsync' or 'rclone'
        api_client: ApiClient instance
        notifier: ProgressNotifier instance
        policies: RetryPolicies
        cfg: Agent configuration
        **kwargs: Passed through to the strategy (e.g. sleep)

    Returns:
        Strategy instance

    Raises:
        ConfigurationError: If method is not supported
    """
    if method not in STRATEGIES:
        raise ConfigurationError(
            f"Invalid backup method: {method}. Valid options: {list(STRATEGIES.keys())}"
        )
    return STRATEGIES[method](api_client, notifier, policies=policies, cfg=cfg, **kwargs)


def execute_backup(config: BackupConfiguration, api_client, notifier=None, policies=None, cfg=None) -> ExecutionResult:
    """
    Execute one backup configuration with its method's strategy.

    Args:
        config: Configuration to run
        api_client: ApiClient instance
        notifier: ProgressNotifier instance
        policies: RetryPolicies
        cfg: Agent configuration

    Returns:
        ExecutionResult with execution results
    """
    strategy = create_strategy(config.method, api_client, notifier, policies=policies, cfg=cfg)
    return strategy.execute(config)
