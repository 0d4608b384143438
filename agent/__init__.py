import os
import logging
from logging.handlers import RotatingFileHandler


__version__ = '1.0.0'


def configure_logging(cfg, log_level=None):
    """Configure agent logging"""

    # Create logs directory if it doesn't exist
    log_dir = cfg.LOG_DIR
    os.makedirs(log_dir, exist_ok=True)

    level_name = (log_level or cfg.LOG_LEVEL or 'info').upper()
    if level_name == 'WARN':
        level_name = 'WARNING'
    log_level = getattr(logging, level_name, logging.INFO)

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)

    # File handler
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, 'agent.log'),
        maxBytes=10485760,  # 10MB
        backupCount=10
    )
    file_handler.setLevel(log_level)
    file_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
    )
    file_handler.setFormatter(file_formatter)

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=[console_handler, file_handler], force=True)

    # Third-party chatter stays at WARNING unless debugging
    if log_level > logging.DEBUG:
        for name in ('urllib3', 'botocore', 'boto3', 's3transfer', 'websocket', 'apscheduler'):
            logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(f"Logging configured (level: {logging.getLevelName(log_level)})")


def create_agent(config_name=None, config_path=None, log_level=None):
    """Agent factory"""

    # Load configuration
    from agent.config import load_config
    cfg = load_config(config_name, config_path)

    # Configure logging
    configure_logging(cfg, log_level)

    # Ensure required directories exist
    os.makedirs(cfg.TEMP_DIR, exist_ok=True)

    from agent.coordinator import Agent
    logging.getLogger(__name__).info(f"BackApp Agent v{cfg.AGENT_VERSION} ({cfg.AGENT_PLATFORM})")
    return Agent(cfg)
