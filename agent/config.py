import os
import json
import platform
import tempfile

from agent.backup.errors import ConfigurationError


PLACEHOLDER_API_KEY = 'YOUR_API_KEY_HERE'

# config.json key -> Config attribute
FILE_KEYS = {
    'apiKey': 'API_KEY',
    'serverUrl': 'SERVER_URL',
    'logLevel': 'LOG_LEVEL',
    'logDir': 'LOG_DIR',
    'tempDir': 'TEMP_DIR',
    'pollInterval': 'POLL_INTERVAL',
}


def _env_int(name, default):
    value = os.environ.get(name)
    return int(value) if value else default


def _env_float(name, default):
    value = os.environ.get(name)
    return float(value) if value else default


class Config:
    """Base configuration"""

    # Server
    API_KEY = os.environ.get('AGENT_API_KEY')
    SERVER_URL = os.environ.get('AGENT_SERVER_URL')
    API_PREFIX = '/api/agent'
    REQUEST_TIMEOUT = _env_float('AGENT_REQUEST_TIMEOUT', 30.0)
    UPLOAD_TIMEOUT = _env_float('AGENT_UPLOAD_TIMEOUT', 300.0)

    # Agent identity reported with the heartbeat
    AGENT_PLATFORM = os.environ.get('AGENT_PLATFORM') or platform.system().lower()
    AGENT_VERSION = os.environ.get('AGENT_VERSION') or '1.0.0'

    # Logging
    LOG_LEVEL = os.environ.get('LOG_LEVEL') or 'info'
    LOG_DIR = os.environ.get('AGENT_LOG_DIR') or os.path.expanduser('~/.backapp-agent/logs')

    # Local working files (archives are written here before upload)
    TEMP_DIR = os.environ.get('AGENT_TEMP_DIR') or tempfile.gettempdir()

    # Daemon
    POLL_INTERVAL = _env_int('AGENT_POLL_INTERVAL', 5 * 60)

    # Retry
    RETRY_MAX_ATTEMPTS = 3
    RETRY_BASE_DELAY = 2.0
    RETRY_MAX_DELAY = 30.0
    UPLOAD_MAX_ATTEMPTS = 5
    FAILURE_REPORT_MAX_ATTEMPTS = 2
    FAILURE_REPORT_BASE_DELAY = 1.0

    # Scheduling
    DUE_WINDOW_SECONDS = 5 * 60

    # Progress notifications
    PROGRESS_INTERVAL = 1.0
    NOTIFY_QUEUE_SIZE = 100
    WS_RECONNECT_DELAY = 5.0
    WS_MAX_RECONNECTS = 10
    WS_PING_INTERVAL = 30.0

    def __init__(self, overrides=None):
        for key, value in (overrides or {}).items():
            setattr(self, key, value)

    @property
    def api_base_url(self):
        return self.SERVER_URL.rstrip('/') + self.API_PREFIX

    @property
    def websocket_url(self):
        base = self.SERVER_URL.rstrip('/')
        if base.startswith('https://'):
            base = 'wss://' + base[len('https://'):]
        elif base.startswith('http://'):
            base = 'ws://' + base[len('http://'):]
        return f"{base}/api/ws?agent=true"

    def validate(self):
        """Raise ConfigurationError when the agent cannot talk to its server."""
        if not self.API_KEY or self.API_KEY == PLACEHOLDER_API_KEY:
            raise ConfigurationError(
                'API key not configured. Set AGENT_API_KEY or add apiKey to config.json.'
            )
        if not self.SERVER_URL:
            raise ConfigurationError(
                'Server URL not configured. Set AGENT_SERVER_URL or add serverUrl to config.json.'
            )


class DevelopmentConfig(Config):
    """Development configuration"""
    LOG_LEVEL = os.environ.get('LOG_LEVEL') or 'debug'
    POLL_INTERVAL = _env_int('AGENT_POLL_INTERVAL', 60)

    # Keep logs and archives beside the checkout
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')
    TEMP_DIR = os.path.join(DATA_DIR, 'temp')


class ProductionConfig(Config):
    """Production configuration"""


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'default': ProductionConfig
}


def read_config_file(path):
    """
    Read a config.json file into Config attribute overrides.

    Args:
        path: Path to the JSON file

    Returns:
        Dict of Config attribute names to values

    Raises:
        ConfigurationError: If the file cannot be parsed
    """
    try:
        with open(path, 'r') as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid configuration file {path}: {e}")

    overrides = {}
    for file_key, attribute in FILE_KEYS.items():
        if data.get(file_key) is not None:
            overrides[attribute] = data[file_key]

    agent_info = data.get('agent') or {}
    if agent_info.get('platform'):
        overrides['AGENT_PLATFORM'] = agent_info['platform']
    if agent_info.get('version'):
        overrides['AGENT_VERSION'] = agent_info['version']

    return overrides


def load_config(config_name=None, path=None):
    """
    Build and validate the agent configuration.

    Args:
        config_name: Profile name from the config dict (default: AGENT_ENV or production)
        path: Optional config.json path; ./config.json is used when present

    Returns:
        Validated Config instance

    Raises:
        ConfigurationError: If the profile is unknown or required settings are missing
    """
    if config_name is None:
        config_name = os.environ.get('AGENT_ENV', 'production')

    if config_name not in config:
        raise ConfigurationError(
            f"Unknown configuration profile: {config_name}. "
            f"Valid options: {list(config.keys())}"
        )

    if path is None and os.path.exists('config.json'):
        path = 'config.json'

    overrides = {}
    if path is not None:
        if not os.path.exists(path):
            raise ConfigurationError(f"Configuration file not found: {path}")
        overrides = read_config_file(path)

    cfg = config[config_name](overrides)
    cfg.validate()
    return cfg
