"""
Shared pytest fixtures for agent tests.

This module provides fixtures for:
- Agent configuration pointing at temporary directories
- Mock API client and a recording notifier
- Backup configuration payloads for every method
- Mock fixtures for external services (S3)
- Temporary file fixtures
"""

import os
from unittest.mock import MagicMock

import pytest
import boto3
from moto import mock_aws

from agent.config import Config
from agent.models import BackupConfiguration
from agent.notifier import Notifier


class RecordingNotifier(Notifier):
    """Notifier that keeps every message instead of sending it."""

    def __init__(self):
        self.messages = []

    def notify(self, msg_type, data):
        self.messages.append((msg_type, data))
        return True

    def of_type(self, msg_type):
        return [data for t, data in self.messages if t == msg_type]

    def stages(self):
        return [data['progress']['stage'] for data in self.of_type('backup_progress')]


@pytest.fixture(scope='function')
def agent_cfg(tmp_path):
    """
    Agent configuration with test credentials.

    Temp and log directories live under tmp_path.
    """
    cfg = Config({
        'API_KEY': 'test-api-key',
        'SERVER_URL': 'http://backapp.test',
        'TEMP_DIR': str(tmp_path / 'temp'),
        'LOG_DIR': str(tmp_path / 'logs'),
        'RETRY_BASE_DELAY': 0.01,
        'RETRY_MAX_DELAY': 0.01,
        'FAILURE_REPORT_BASE_DELAY': 0.01,
    })
    os.makedirs(cfg.TEMP_DIR, exist_ok=True)
    return cfg


@pytest.fixture
def mock_api_client():
    """
    MagicMock standing in for ApiClient.

    start_backup returns a log id and a pre-signed upload target.
    """
    client = MagicMock()
    client.start_backup.return_value = {
        'success': True,
        'logId': 'log-123',
        'upload': {
            'url': 'https://storage.test/upload?signature=abc',
            'method': 'PUT',
            's3Path': 's3://test-bucket/users/u1/backup.tar.gz',
        },
    }
    client.complete_backup.return_value = {'success': True}
    client.upload_file.return_value = None
    return client


@pytest.fixture
def notifier():
    """Notifier recording every message sent during a test."""
    return RecordingNotifier()


@pytest.fixture
def no_sleep():
    """List of requested delays; pass no_sleep.append as the sleep function."""
    return []


@pytest.fixture
def source_tree(tmp_path):
    """
    Create a source directory with three files totalling 10 KB.

    Creates:
    - source/a.txt (4096 bytes)
    - source/b.txt (4096 bytes)
    - source/nested/c.txt (2048 bytes)
    """
    source = tmp_path / 'source'
    source.mkdir()
    (source / 'a.txt').write_bytes(b'a' * 4096)
    (source / 'b.txt').write_bytes(b'b' * 4096)
    nested = source / 'nested'
    nested.mkdir()
    (nested / 'c.txt').write_bytes(b'c' * 2048)
    return source


@pytest.fixture
def temp_files(tmp_path):
    """
    Create temporary test files and directories.

    Creates:
    - test_file1.txt
    - test_file2.log (excluded by default)
    - nested/test_file3.txt
    - node_modules/pkg/index.js (excluded by default)
    - test_file.pyc
    """
    data = tmp_path / 'data'
    data.mkdir()
    (data / 'test_file1.txt').write_text('Test content 1')
    (data / 'test_file2.log').write_text('Test log content')

    nested_dir = data / 'nested'
    nested_dir.mkdir()
    (nested_dir / 'test_file3.txt').write_text('Nested test content')

    modules = data / 'node_modules' / 'pkg'
    modules.mkdir(parents=True)
    (modules / 'index.js').write_text('module.exports = {}')

    (data / 'test_file.pyc').write_bytes(b'compiled python')

    return data


@pytest.fixture
def make_config():
    """Factory building a BackupConfiguration from payload overrides."""
    def _make(**overrides):
        payload = {
            'id': 'cfg-1',
            'name': 'Documents',
            'sources': [],
            'options': {'method': 'archive'},
            'userId': 'user-1',
            'agentId': 'agent-1',
        }
        payload.update(overrides)
        return BackupConfiguration.from_dict(payload)
    return _make


@pytest.fixture
def credentials_payload():
    """Temporary credentials as sent by the server."""
    return {
        'accessKeyId': 'ASIATESTKEY',
        'secretAccessKey': 'test-secret',
        'sessionToken': 'test-session-token',
        'expiration': '2026-01-01T00:00:00Z',
        'bucket': 'test-bucket',
        'region': 'us-east-1',
    }


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3
