"""
Error types and classification for backup execution.

Every failure surfaced by a strategy is mapped onto a closed set of
categories, each carrying a short user-facing message and a retriable flag.
The same predicate drives the retry engine.
"""

import errno
import socket
from dataclasses import dataclass

import requests
from botocore.exceptions import ClientError, EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError


MISSING_DEPENDENCY = 'missing-dependency'
FILESYSTEM = 'filesystem'
NETWORK = 'network'
AUTHENTICATION = 'authentication'
NOTFOUND = 'notfound'
SIZE = 'size'
SERVER = 'server'
UNKNOWN = 'unknown'

CATEGORIES = (
    MISSING_DEPENDENCY,
    FILESYSTEM,
    NETWORK,
    AUTHENTICATION,
    NOTFOUND,
    SIZE,
    SERVER,
    UNKNOWN,
)

RETRIABLE_ERRNOS = {
    errno.ECONNREFUSED,
    errno.ECONNRESET,
    errno.ETIMEDOUT,
    errno.ENETUNREACH,
    errno.EHOSTUNREACH,
}

TRANSIENT_MARKERS = ('timeout', 'timed out', 'SlowDown', 'ServiceUnavailable', 'Connection reset')


class BackupError(Exception):
    """Base class for errors raised by the agent."""
    pass


class ConfigurationError(BackupError):
    """Raised when a configuration or option is invalid. Never retried."""
    pass


class ToolNotFoundError(BackupError):
    """Raised when an external command is not installed."""

    def __init__(self, tool, hint=None):
        self.tool = tool
        super().__init__(f"{tool} command not found. {hint or f'Please install {tool}.'}")


class ToolError(BackupError):
    """Raised when an external command exits with a non-zero status."""

    def __init__(self, tool, returncode, stderr='', stdout=''):
        self.tool = tool
        self.returncode = returncode
        self.stderr = stderr
        self.stdout = stdout
        super().__init__(f"{tool} failed with code {returncode}: {stderr.strip()}")


class ApiError(BackupError):
    """Raised when the server answers with a non-2xx status."""

    def __init__(self, message, status_code=None):
        self.status_code = status_code
        super().__init__(message)


@dataclass(frozen=True)
class ErrorClassification:
    category: str
    user_message: str
    retriable: bool

    def to_dict(self):
        return {
            'category': self.category,
            'userMessage': self.user_message,
            'retriable': self.retriable,
        }


def _status_code(error):
    """Extract an HTTP status code from the error, if it carries one."""
    status = getattr(error, 'status_code', None)
    if isinstance(status, int):
        return status

    response = getattr(error, 'response', None)
    if isinstance(error, ClientError):
        status = (response or {}).get('ResponseMetadata', {}).get('HTTPStatusCode')
        return status if isinstance(status, int) else None

    status = getattr(response, 'status_code', None)
    return status if isinstance(status, int) else None


def _message(error):
    try:
        return str(error)
    except Exception:
        return ''


def _is_dns_failure(error):
    if isinstance(error, socket.gaierror):
        return True
    text = _message(error)
    return any(marker in text for marker in (
        'Name or service not known',
        'nodename nor servname',
        'getaddrinfo failed',
        'Temporary failure in name resolution',
        'NameResolutionError',
        'Failed to resolve',
    ))


def _is_connection_refused(error):
    if isinstance(error, ConnectionRefusedError):
        return True
    if getattr(error, 'errno', None) == errno.ECONNREFUSED:
        return True
    return 'Connection refused' in _message(error)


def _is_timeout(error):
    if isinstance(error, (requests.Timeout, socket.timeout, TimeoutError,
                          ConnectTimeoutError, ReadTimeoutError)):
        return True
    if getattr(error, 'errno', None) == errno.ETIMEDOUT:
        return True
    text = _message(error).lower()
    return 'timeout' in text or 'timed out' in text


def _is_network_error(error):
    return isinstance(error, (requests.ConnectionError, ConnectionError, EndpointConnectionError))


def is_retriable_error(error):
    """
    Check whether an error is transient and worth retrying.

    Args:
        error: Exception raised by the failed operation

    Returns:
        True for network failures, 408, 429 and 5xx (except 501) responses,
        and errors whose text marks a transient condition
    """
    if isinstance(error, (ConfigurationError, ToolNotFoundError, ToolError)):
        return False

    if getattr(error, 'errno', None) in RETRIABLE_ERRNOS:
        return True
    if _is_network_error(error) or _is_timeout(error) or _is_dns_failure(error):
        return True

    status = _status_code(error)
    if status is not None:
        if status in (408, 429):
            return True
        if 500 <= status < 600 and status != 501:
            return True

    text = _message(error)
    return any(marker in text for marker in TRANSIENT_MARKERS)


def _classify(error):
    # 1. Missing or failing external tools
    if isinstance(error, ToolNotFoundError):
        return ErrorClassification(MISSING_DEPENDENCY, _message(error), False)
    if isinstance(error, ToolError):
        return ErrorClassification(
            MISSING_DEPENDENCY,
            f"{error.tool} failed with exit code {error.returncode}",
            False
        )

    # 2. Filesystem
    code = getattr(error, 'errno', None) if isinstance(error, OSError) else None
    if isinstance(error, FileNotFoundError) or code == errno.ENOENT:
        return ErrorClassification(FILESYSTEM, 'File or directory not found', False)
    if isinstance(error, PermissionError) or code in (errno.EACCES, errno.EPERM):
        return ErrorClassification(FILESYSTEM, 'Permission denied accessing file or directory', False)
    if code == errno.ENOSPC:
        return ErrorClassification(FILESYSTEM, 'No space left on device', False)

    # 3. HTTP responses; the status wins over whatever the body text says
    status = _status_code(error)
    if status in (401, 403):
        return ErrorClassification(AUTHENTICATION, 'Authentication failed - check your API key', False)
    if status == 404:
        return ErrorClassification(NOTFOUND, 'Resource not found on server', False)
    if status == 413:
        return ErrorClassification(SIZE, 'Backup file too large', False)
    if status is not None and status >= 500:
        return ErrorClassification(SERVER, 'Server error - please try again later', True)

    # 4. Network
    if _is_connection_refused(error):
        return ErrorClassification(NETWORK, 'Connection refused - server may be down', True)
    if _is_dns_failure(error):
        return ErrorClassification(NETWORK, 'DNS lookup failed - check your internet connection', True)
    if _is_timeout(error):
        return ErrorClassification(NETWORK, 'Request timed out - check your internet connection', True)
    if _is_network_error(error):
        return ErrorClassification(NETWORK, 'Network error - check your internet connection', True)

    # 5. Fallback
    return ErrorClassification(
        UNKNOWN,
        _message(error) or 'Unknown error occurred',
        is_retriable_error(error)
    )


def classify_error(error):
    """
    Map an exception onto the closed error taxonomy.

    Args:
        error: Any exception

    Returns:
        ErrorClassification whose category is one of CATEGORIES; never raises
    """
    try:
        return _classify(error)
    except Exception:
        return ErrorClassification(UNKNOWN, 'Unknown error occurred', False)
