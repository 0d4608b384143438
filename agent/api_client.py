"""
HTTP client for the server's agent API.

Every call carries the agent's API key in the X-Agent-API-Key header.
Non-2xx responses raise ApiError with the status code; transport failures
propagate as requests exceptions so the error classifier can tell network
problems from server answers.
"""

import logging
from typing import List, Dict, Any, Optional

import requests

from agent.backup.errors import ApiError
from agent.models import BackupConfiguration, SizeRequest


logger = logging.getLogger(__name__)

__all__ = ['ApiClient', 'ApiError']

LOG_LEVELS = ('info', 'warning', 'error')


class ApiClient:
    """Client for /api/agent endpoints."""

    def __init__(self, cfg, session: Optional[requests.Session] = None):
        """
        Args:
            cfg: Agent configuration (API_KEY, api_base_url, timeouts)
            session: Optional pre-built requests session
        """
        self.cfg = cfg
        self.base_url = cfg.api_base_url
        self.timeout = cfg.REQUEST_TIMEOUT
        self.upload_timeout = cfg.UPLOAD_TIMEOUT

        self.session = session or requests.Session()
        self.session.headers.update({
            'X-Agent-API-Key': cfg.API_KEY,
            'Content-Type': 'application/json',
            'User-Agent': f"backapp-agent/{cfg.AGENT_VERSION}",
        })

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        kwargs.setdefault('timeout', self.timeout)

        response = self.session.request(method, url, **kwargs)

        if not response.ok:
            detail = ''
            try:
                detail = response.json().get('error') or ''
            except ValueError:
                detail = response.text[:200]
            raise ApiError(
                f"{method} {path} failed with status {response.status_code}"
                + (f": {detail}" if detail else ''),
                status_code=response.status_code
            )

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {}

    def send_heartbeat(self, platform: str = None, version: str = None) -> Dict[str, Any]:
        """
        Report the agent as online.

        Returns:
            Server response; 'agent' holds the agent's id, userId and name
        """
        return self._request('POST', '/heartbeat', json={
            'platform': platform or self.cfg.AGENT_PLATFORM,
            'version': version or self.cfg.AGENT_VERSION,
        })

    def get_configs(self) -> List[BackupConfiguration]:
        """
        Fetch the backup configurations assigned to this agent.

        Configurations the agent cannot parse are logged and skipped.
        """
        data = self._request('GET', '/configs')
        configs = []
        for item in data.get('configs') or []:
            try:
                configs.append(BackupConfiguration.from_dict(item))
            except Exception as e:
                logger.warning(f"Skipping invalid configuration {item.get('name') or item.get('id')}: {e}")
        return configs

    def start_backup(self, config_id: str, filename: str) -> Dict[str, Any]:
        """
        Open a backup log on the server.

        Returns:
            Dict with 'logId' and, for uploads, 'upload' {url, method, s3Path, expiresAt}
        """
        return self._request('POST', '/backup/start', json={
            'configId': config_id,
            'filename': filename,
        })

    def complete_backup(
        self,
        log_id: str,
        success: bool,
        error: Optional[str] = None,
        size: int = 0,
        files: int = 0,
        duration: Optional[float] = None
    ) -> Dict[str, Any]:
        """Close a backup log with its final status."""
        payload = {
            'logId': log_id,
            'status': 'completed' if success else 'failed',
            'filesProcessed': int(files or 0),
            'bytesTransferred': int(size or 0),
        }
        if duration is not None:
            payload['duration'] = int(round(duration))
        if error:
            payload['errors'] = [error]
        return self._request('POST', '/backup/complete', json=payload)

    def upload_file(self, url: str, path: str, content_type: str = 'application/gzip'):
        """
        Upload a file to a pre-signed URL.

        The URL carries its own authorization, so the API key is not sent.
        The file is opened afresh on every call.
        """
        with open(path, 'rb') as f:
            response = requests.put(
                url,
                data=f,
                headers={'Content-Type': content_type},
                timeout=self.upload_timeout
            )

        if not response.ok:
            raise ApiError(
                f"Upload failed with status {response.status_code}",
                status_code=response.status_code
            )

    def send_log(self, level: str, message: str, metadata: Optional[Dict[str, Any]] = None):
        """Send a log line to the server. Failures are ignored."""
        if level not in LOG_LEVELS:
            level = 'info'
        try:
            self._request('POST', '/log', json={
                'level': level,
                'message': message,
                'metadata': metadata or {},
            })
        except Exception as e:
            logger.debug(f"Failed to send log: {e}")

    def get_size_requests(self) -> List[SizeRequest]:
        """Fetch pending size assessment requests."""
        data = self._request('GET', '/size-requests')
        return [SizeRequest.from_dict(item) for item in data.get('requests') or []]

    def report_size(
        self,
        request_id: str,
        total_bytes: int,
        total_files: int,
        error: Optional[str] = None
    ) -> Dict[str, Any]:
        """Report the result of a size assessment."""
        payload = {
            'requestId': request_id,
            'totalBytes': total_bytes,
            'totalFiles': total_files,
        }
        if error:
            payload['error'] = error
        return self._request('POST', '/size-assessment', json=payload)

    def close(self):
        self.session.close()
