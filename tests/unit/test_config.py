"""
Unit tests for agent configuration (agent/config.py).
"""

import os
import json

import pytest

from agent.backup.errors import ConfigurationError
from agent.config import (
    Config,
    DevelopmentConfig,
    ProductionConfig,
    config,
    load_config,
    read_config_file
)


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / 'config.json'
    path.write_text(json.dumps({
        'apiKey': 'file-key',
        'serverUrl': 'https://backapp.example.com',
        'logLevel': 'warning',
        'pollInterval': 120,
        'agent': {'platform': 'darwin', 'version': '2.0.0'},
    }))
    return path


class TestConfig:
    """Test Config."""

    def test_overrides(self):
        cfg = Config({'API_KEY': 'k', 'POLL_INTERVAL': 10})

        assert cfg.API_KEY == 'k'
        assert cfg.POLL_INTERVAL == 10
        assert 'POLL_INTERVAL' in vars(cfg)

    def test_urls(self):
        """Test API and WebSocket URLs derive from the server URL."""
        cfg = Config({'SERVER_URL': 'http://localhost:5000/'})

        assert cfg.api_base_url == 'http://localhost:5000/api/agent'
        assert cfg.websocket_url == 'ws://localhost:5000/api/ws?agent=true'

    def test_secure_websocket(self):
        assert Config({'SERVER_URL': 'https://b.example.com'}).websocket_url == 'wss://b.example.com/api/ws?agent=true'

    @pytest.mark.parametrize("api_key", [None, '', 'YOUR_API_KEY_HERE'])
    def test_validate_api_key(self, api_key):
        with pytest.raises(ConfigurationError, match='API key not configured'):
            Config({'API_KEY': api_key, 'SERVER_URL': 'http://x'}).validate()

    def test_validate_server_url(self):
        with pytest.raises(ConfigurationError, match='Server URL not configured'):
            Config({'API_KEY': 'k', 'SERVER_URL': None}).validate()

    def test_profiles(self):
        assert config['default'] is ProductionConfig
        assert DevelopmentConfig.TEMP_DIR.endswith(os.path.join('data', 'temp'))


class TestReadConfigFile:
    """Test read_config_file."""

    def test_maps_keys(self, config_file):
        overrides = read_config_file(str(config_file))

        assert overrides == {
            'API_KEY': 'file-key',
            'SERVER_URL': 'https://backapp.example.com',
            'LOG_LEVEL': 'warning',
            'POLL_INTERVAL': 120,
            'AGENT_PLATFORM': 'darwin',
            'AGENT_VERSION': '2.0.0',
        }

    def test_invalid_json(self, tmp_path):
        path = tmp_path / 'bad.json'
        path.write_text('{not json')

        with pytest.raises(ConfigurationError, match='Invalid configuration file'):
            read_config_file(str(path))


class TestLoadConfig:
    """Test load_config."""

    def test_from_file(self, config_file):
        cfg = load_config('production', str(config_file))

        assert isinstance(cfg, ProductionConfig)
        assert cfg.API_KEY == 'file-key'
        assert cfg.POLL_INTERVAL == 120

    def test_picks_up_local_config_json(self, config_file, monkeypatch):
        """Test ./config.json is used when no path is given."""
        monkeypatch.chdir(config_file.parent)

        assert load_config('development').API_KEY == 'file-key'

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match='Configuration file not found'):
            load_config('production', str(tmp_path / 'nope.json'))

    def test_unknown_profile(self):
        with pytest.raises(ConfigurationError, match='Unknown configuration profile'):
            load_config('staging')

    def test_profile_from_environment(self, config_file, monkeypatch):
        monkeypatch.setenv('AGENT_ENV', 'development')

        assert isinstance(load_config(path=str(config_file)), DevelopmentConfig)

    def test_unconfigured(self, tmp_path, monkeypatch):
        """Test a missing API key fails validation."""
        monkeypatch.chdir(tmp_path)
        monkeypatch.setattr(Config, 'API_KEY', None)

        with pytest.raises(ConfigurationError, match='API key not configured'):
            load_config('production')
