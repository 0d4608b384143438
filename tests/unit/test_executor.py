"""
Unit tests for backup executor (agent/backup/executor.py).

Tests strategy dispatch by method.
"""

from unittest.mock import patch

import pytest

from agent.backup.archive import ArchiveStrategy
from agent.backup.errors import ConfigurationError
from agent.backup.executor import STRATEGIES, create_strategy, execute_backup
from agent.backup.rclone import RcloneStrategy
from agent.backup.retry import RetryPolicies, RetryPolicy
from agent.backup.rsync import RsyncStrategy
from agent.models import ExecutionResult


class TestCreateStrategy:
    """Test create_strategy factory."""

    @pytest.mark.parametrize("method,strategy_class", [
        ('archive', ArchiveStrategy),
        ('rsync', RsyncStrategy),
        ('rclone', RcloneStrategy),
    ])
    def test_known_methods(self, method, strategy_class, mock_api_client, notifier, agent_cfg):
        """Test each method maps to its strategy."""
        strategy = create_strategy(method, mock_api_client, notifier, cfg=agent_cfg)

        assert isinstance(strategy, strategy_class)
        assert strategy.api_client is mock_api_client
        assert strategy.notifier is notifier
        assert strategy.cfg is agent_cfg

    def test_policies_are_passed(self, mock_api_client, agent_cfg):
        """Test explicit retry policies override the configured ones."""
        policies = RetryPolicies(default=RetryPolicy(max_attempts=1))

        strategy = create_strategy('archive', mock_api_client, policies=policies, cfg=agent_cfg)

        assert strategy.policies is policies

    def test_policies_from_config(self, mock_api_client, agent_cfg):
        """Test policies default to the agent configuration."""
        strategy = create_strategy('archive', mock_api_client, cfg=agent_cfg)

        assert strategy.policies.upload.max_attempts == agent_cfg.UPLOAD_MAX_ATTEMPTS
        assert strategy.policies.failure_report.max_attempts == agent_cfg.FAILURE_REPORT_MAX_ATTEMPTS

    def test_unknown_method(self, mock_api_client):
        """Test unknown methods raise ConfigurationError."""
        with pytest.raises(ConfigurationError, match='Invalid backup method: tape'):
            create_strategy('tape', mock_api_client)

    def test_registry(self):
        assert sorted(STRATEGIES) == ['archive', 'rclone', 'rsync']


class TestExecuteBackup:
    """Test execute_backup."""

    def test_dispatches_by_method(self, make_config, mock_api_client, notifier, agent_cfg):
        """Test the configuration's method selects the strategy."""
        config = make_config(options={'method': 'rsync'})
        expected = ExecutionResult(success=True, size=1, files_transferred=1)

        with patch.object(RsyncStrategy, 'execute', return_value=expected) as mock_execute:
            result = execute_backup(config, mock_api_client, notifier, cfg=agent_cfg)

        assert result is expected
        mock_execute.assert_called_once_with(config)

    def test_archive_end_to_end(self, make_config, source_tree, mock_api_client, notifier, agent_cfg):
        """Test a real archive run through the executor."""
        config = make_config(sources=[{'path': str(source_tree)}])

        result = execute_backup(config, mock_api_client, notifier, cfg=agent_cfg)

        assert result.success is True
        assert result.files_transferred == 3
        mock_api_client.upload_file.assert_called_once()

    def test_failure_never_raises(self, make_config, tmp_path, mock_api_client, agent_cfg):
        """Test failures come back as results."""
        config = make_config(sources=[{'path': str(tmp_path / 'gone')}])

        result = execute_backup(config, mock_api_client, cfg=agent_cfg)

        assert result.success is False
        assert result.error == 'File or directory not found'
