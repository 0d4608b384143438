"""
Data model for one execution cycle.

Configurations are owned by the server; the agent parses a read-only
snapshot of each one per cycle and keeps nothing once the cycle ends.
"""

from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any

from agent.backup.errors import ConfigurationError, ErrorClassification


METHODS = ('archive', 'rsync', 'rclone')


@dataclass(frozen=True)
class Source:
    path: str
    exclude_patterns: List[str] = field(default_factory=list)
    include_patterns: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Source':
        if isinstance(data, str):
            return cls(path=data)
        if not data.get('path'):
            raise ConfigurationError('Source path is required')
        return cls(
            path=data['path'],
            exclude_patterns=list(data.get('excludePatterns') or []),
            include_patterns=list(data.get('includePatterns') or [])
        )


@dataclass(frozen=True)
class Schedule:
    cron_expression: str
    timezone: str = 'UTC'

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional['Schedule']:
        if not data or not data.get('cronExpression'):
            return None
        return cls(
            cron_expression=data['cronExpression'],
            timezone=data.get('timezone') or 'UTC'
        )


@dataclass(frozen=True)
class Credentials:
    """Temporary cloud credentials handed down by the server for one cycle."""
    access_key_id: str
    secret_access_key: str = field(repr=False)
    session_token: Optional[str] = field(default=None, repr=False)
    expiration: Optional[str] = None
    bucket: Optional[str] = None
    region: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional['Credentials']:
        if not data:
            return None
        return cls(
            access_key_id=data.get('accessKeyId', ''),
            secret_access_key=data.get('secretAccessKey', ''),
            session_token=data.get('sessionToken'),
            expiration=data.get('expiration'),
            bucket=data.get('bucket'),
            region=data.get('region')
        )

    def as_env(self) -> Dict[str, str]:
        """Environment variables for AWS-compatible command line tools."""
        env = {
            'AWS_ACCESS_KEY_ID': self.access_key_id,
            'AWS_SECRET_ACCESS_KEY': self.secret_access_key,
        }
        if self.region:
            env['AWS_DEFAULT_REGION'] = self.region
            env['AWS_REGION'] = self.region
        if self.session_token:
            env['AWS_SESSION_TOKEN'] = self.session_token
        return env


@dataclass(frozen=True)
class BackupConfiguration:
    id: str
    name: str
    sources: List[Source]
    method: str = 'archive'
    options: Dict[str, Any] = field(default_factory=dict)
    schedule: Optional[Schedule] = None
    user_id: Optional[str] = None
    agent_id: Optional[str] = None
    credentials: Optional[Credentials] = None
    requested_at: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BackupConfiguration':
        """
        Parse a configuration as returned by GET /configs.

        Raises:
            ConfigurationError: If the payload lacks an id or name, or names an unknown method
        """
        if not data.get('id') or not data.get('name'):
            raise ConfigurationError('Backup configuration is missing id or name')

        options = dict(data.get('options') or {})
        method = options.get('method') or 'archive'
        if method not in METHODS:
            raise ConfigurationError(
                f"Invalid backup method: {method}. Valid options: {list(METHODS)}"
            )

        return cls(
            id=data['id'],
            name=data['name'],
            sources=[Source.from_dict(s) for s in data.get('sources') or []],
            method=method,
            options=options,
            schedule=Schedule.from_dict(data.get('schedule')),
            user_id=data.get('userId'),
            agent_id=data.get('agentId'),
            credentials=Credentials.from_dict(data.get('awsCredentials')),
            requested_at=data.get('requestedAt')
        )

    def method_options(self) -> Dict[str, Any]:
        """Options block for this configuration's method (e.g. options['rsync'])."""
        return dict(self.options.get(self.method) or {})


@dataclass
class ProgressEvent:
    stage: str
    files_processed: int = 0
    bytes_processed: int = 0
    total_bytes: Optional[int] = None
    current_file: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'stage': self.stage,
            'filesProcessed': self.files_processed,
            'bytesProcessed': self.bytes_processed,
        }
        if self.total_bytes is not None:
            data['totalBytes'] = self.total_bytes
        if self.current_file is not None:
            data['currentFile'] = self.current_file
        return data


@dataclass
class ExecutionResult:
    success: bool
    size: int = 0
    files_transferred: int = 0
    duration: float = 0.0
    classification: Optional[ErrorClassification] = None

    @property
    def error(self) -> Optional[str]:
        return self.classification.user_message if self.classification else None

    @property
    def error_category(self) -> Optional[str]:
        return self.classification.category if self.classification else None

    @property
    def retriable(self) -> Optional[bool]:
        return self.classification.retriable if self.classification else None

    @classmethod
    def failed(cls, classification: ErrorClassification, duration: float = 0.0) -> 'ExecutionResult':
        return cls(success=False, duration=duration, classification=classification)

    def to_dict(self) -> Dict[str, Any]:
        if self.success:
            return {
                'success': True,
                'size': self.size,
                'filesTransferred': self.files_transferred,
                'duration': round(self.duration, 2),
            }
        return {
            'success': False,
            'error': self.error,
            'errorCategory': self.error_category,
            'retriable': self.retriable,
            'duration': round(self.duration, 2),
        }


@dataclass(frozen=True)
class SizeRequest:
    id: str
    sources: List[Source]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SizeRequest':
        return cls(
            id=data['id'],
            sources=[Source.from_dict(s) for s in data.get('sources') or []]
        )
