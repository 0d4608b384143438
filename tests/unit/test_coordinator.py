"""
Unit tests for the cycle coordinator (agent/coordinator.py).
"""

import logging
from unittest.mock import MagicMock, patch

import pytest
import requests
from freezegun import freeze_time

from agent.backup.errors import ApiError, ErrorClassification
from agent.coordinator import Agent
from agent.log_handlers import NotifierLogHandler, ServerLogHandler
from agent.models import ExecutionResult, SizeRequest, Source
from agent.notifier import NullNotifier, ProgressNotifier


@pytest.fixture
def backup_agent(agent_cfg, mock_api_client, notifier):
    mock_api_client.send_heartbeat.return_value = {
        'success': True,
        'agent': {'id': 'agent-1', 'userId': 'user-1', 'name': 'Laptop'},
    }
    mock_api_client.get_configs.return_value = []
    mock_api_client.get_size_requests.return_value = []
    agent = Agent(agent_cfg, api_client=mock_api_client, notifier=notifier)
    yield agent
    agent.cleanup()


def root_handlers(handler_class):
    return [h for h in logging.getLogger().handlers if isinstance(h, handler_class)]


class TestInitialize:
    """Test Agent.initialize."""

    def test_heartbeat(self, backup_agent, mock_api_client):
        """Test the heartbeat registers the agent and mirrors logs."""
        assert backup_agent.initialize() is True

        mock_api_client.send_heartbeat.assert_called_once()
        assert backup_agent.agent_info['name'] == 'Laptop'
        assert len(root_handlers(ServerLogHandler)) == 1

    def test_unreachable_server(self, backup_agent, mock_api_client, caplog):
        """Test a failed heartbeat returns False with a classified message."""
        mock_api_client.send_heartbeat.side_effect = ApiError('Unauthorized', 401)

        assert backup_agent.initialize() is False
        assert 'Authentication failed - check your API key' in caplog.text
        assert root_handlers(ServerLogHandler) == []

    def test_websocket_connection(self, agent_cfg, mock_api_client):
        """Test a ProgressNotifier is connected when no notifier is injected."""
        mock_api_client.send_heartbeat.return_value = {'agent': {'id': 'agent-1', 'userId': 'user-1'}}
        agent = Agent(agent_cfg, api_client=mock_api_client)

        with patch('agent.coordinator.AgentConnection') as connection_class:
            connection = connection_class.from_config.return_value
            connection.is_ready.return_value = False
            try:
                assert agent.initialize() is True

                connection_class.from_config.assert_called_once_with(agent_cfg, 'user-1', 'agent-1')
                connection.connect.assert_called_once()
                assert isinstance(agent.notifier, ProgressNotifier)
                assert len(root_handlers(NotifierLogHandler)) == 1
            finally:
                agent.cleanup()

        connection.disconnect.assert_called_once()
        assert isinstance(agent.notifier, NullNotifier)
        assert root_handlers(NotifierLogHandler) == []


class TestRunCycle:
    """Test Agent.run_cycle."""

    @freeze_time('2025-01-15 02:03:00')
    @patch('agent.coordinator.execute_backup')
    def test_runs_due_configs_in_order(self, mock_execute, backup_agent, mock_api_client, make_config, notifier):
        """Test only due configurations run, sequentially."""
        configs = [
            make_config(id='a', name='A', schedule={'cronExpression': '0 2 * * *'}),
            make_config(id='b', name='B', schedule={'cronExpression': '0 9 * * *'}),
            make_config(id='c', name='C', requestedAt='2025-01-15T02:02:00Z'),
        ]
        mock_api_client.get_configs.return_value = configs
        mock_execute.return_value = ExecutionResult(success=True, size=1024, files_transferred=1)

        results = backup_agent.run_cycle()

        assert [c.id for c, _ in results] == ['a', 'c']
        assert [call[0][0].id for call in mock_execute.call_args_list] == ['a', 'c']
        kwargs = mock_execute.call_args[1]
        assert kwargs['cfg'] is backup_agent.cfg
        assert kwargs['policies'] is backup_agent.policies
        assert mock_execute.call_args[0][2] is notifier

    @patch('agent.coordinator.execute_backup')
    def test_failure_does_not_stop_cycle(self, mock_execute, backup_agent, mock_api_client, make_config):
        """Test a failed configuration is followed by the next one."""
        mock_api_client.get_configs.return_value = [make_config(id='a'), make_config(id='b')]
        mock_execute.side_effect = [
            ExecutionResult.failed(ErrorClassification('filesystem', 'File or directory not found', False)),
            ExecutionResult(success=True),
        ]

        results = backup_agent.run_cycle(force_ids=['a', 'b'])

        assert [r.success for _, r in results] == [False, True]

    @patch('agent.coordinator.execute_backup')
    def test_unknown_force_id(self, mock_execute, backup_agent, mock_api_client, make_config, caplog):
        mock_api_client.get_configs.return_value = [make_config(id='a')]

        assert backup_agent.run_cycle(force_ids=['zzz']) == []
        assert 'Configuration not assigned to this agent: zzz' in caplog.text
        mock_execute.assert_not_called()

    def test_no_configs(self, backup_agent):
        assert backup_agent.run_cycle() == []

    def test_fetch_failure_raises(self, backup_agent, mock_api_client, caplog):
        """Test an unreachable server aborts the cycle."""
        mock_api_client.get_configs.side_effect = requests.ConnectionError('Connection refused')

        with pytest.raises(requests.ConnectionError):
            backup_agent.run_cycle()

        assert 'Backup cycle failed' in caplog.text

    def test_archive_end_to_end(self, backup_agent, mock_api_client, make_config, source_tree, notifier):
        """Test a forced archive run through the real executor."""
        mock_api_client.get_configs.return_value = [
            make_config(sources=[{'path': str(source_tree)}])
        ]

        results = backup_agent.run_cycle(force_ids=['cfg-1'])

        assert results[0][1].success is True
        assert notifier.of_type('backup_completed')[0]['stats']['filesTransferred'] == 3


class TestProcessSizeRequests:
    """Test Agent.process_size_requests."""

    def test_reports_sizes(self, backup_agent, mock_api_client, source_tree):
        mock_api_client.get_size_requests.return_value = [
            SizeRequest(id='sr-1', sources=[Source(path=str(source_tree))]),
        ]

        assert backup_agent.process_size_requests() == 1

        mock_api_client.report_size.assert_called_once_with('sr-1', 10240, 3, error=None)

    def test_empty_sources(self, backup_agent, mock_api_client):
        """Test requests without sources are reported as errors."""
        mock_api_client.get_size_requests.return_value = [SizeRequest(id='sr-2', sources=[])]

        backup_agent.process_size_requests()

        mock_api_client.report_size.assert_called_once_with(
            'sr-2', 0, 0, error='No source paths in size request'
        )

    def test_report_failure_is_logged(self, backup_agent, mock_api_client, source_tree, caplog):
        mock_api_client.get_size_requests.return_value = [
            SizeRequest(id='sr-3', sources=[Source(path=str(source_tree))]),
        ]
        mock_api_client.report_size.side_effect = requests.ConnectionError('down')

        assert backup_agent.process_size_requests() == 1
        assert 'Failed to report size assessment sr-3' in caplog.text

    def test_nothing_pending(self, backup_agent, mock_api_client):
        assert backup_agent.process_size_requests() == 0
        mock_api_client.report_size.assert_not_called()


class TestCleanup:
    """Test Agent.cleanup."""

    def test_closes_everything(self, agent_cfg, mock_api_client):
        notifier = MagicMock()
        agent = Agent(agent_cfg, api_client=mock_api_client, notifier=notifier)

        agent.cleanup()

        notifier.close.assert_called_once()
        mock_api_client.close.assert_called_once()
        assert isinstance(agent.notifier, NullNotifier)
