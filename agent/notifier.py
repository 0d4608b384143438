"""
Real-time notifications to the server over a WebSocket.

AgentConnection owns the socket: it runs websocket-client's WebSocketApp on
a daemon thread, authenticates, keeps the link alive with application-level
pings and reconnects with a growing delay.

ProgressNotifier sits between backups and the connection. Notifications go
into a bounded queue drained by a sender thread, so a slow or absent
connection never blocks a backup; when the connection is not ready or the
queue is full the notification is dropped.
"""

import json
import time
import queue
import logging
import threading
from typing import Optional, Dict, Any, Callable

import websocket

from agent.models import ProgressEvent


logger = logging.getLogger(__name__)

_STOP = object()


def _timestamp() -> int:
    return int(time.time() * 1000)


class AgentConnection:
    """Persistent, self-reconnecting WebSocket link for one agent."""

    def __init__(
        self,
        url: str,
        user_id: Optional[str],
        agent_id: Optional[str],
        reconnect_delay: float = 5.0,
        max_reconnects: int = 10,
        ping_interval: float = 30.0,
        app_factory: Callable = websocket.WebSocketApp
    ):
        """
        Args:
            url: ws(s)://<server>/api/ws?agent=true
            user_id: Owner of the agent, sent when authenticating
            agent_id: Agent id, sent when authenticating
            reconnect_delay: Base delay in seconds; attempt n waits delay * min(n, 5)
            max_reconnects: Reconnection attempts before giving up
            ping_interval: Seconds between application-level pings
            app_factory: WebSocketApp constructor
        """
        self.url = url
        self.user_id = user_id
        self.agent_id = agent_id
        self.reconnect_delay = reconnect_delay
        self.max_reconnects = max_reconnects
        self.ping_interval = ping_interval
        self.app_factory = app_factory

        self.connected = False
        self.authenticated = False
        self.reconnect_attempts = 0

        self._ws = None
        self._thread = None
        self._stop = threading.Event()

    @classmethod
    def from_config(cls, cfg, user_id, agent_id) -> 'AgentConnection':
        return cls(
            cfg.websocket_url,
            user_id,
            agent_id,
            reconnect_delay=cfg.WS_RECONNECT_DELAY,
            max_reconnects=cfg.WS_MAX_RECONNECTS,
            ping_interval=cfg.WS_PING_INTERVAL
        )

    def connect(self):
        """Start the connection thread. Returns immediately."""
        if self._thread and self._thread.is_alive():
            return

        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name='agent-connection', daemon=True)
        self._thread.start()

    def _run(self):
        while not self._stop.is_set():
            logger.info(f"Connecting to WebSocket: {self.url}")
            self._ws = self.app_factory(
                self.url,
                on_open=self._on_open,
                on_message=self._on_message,
                on_error=self._on_error,
                on_close=self._on_close
            )
            self._ws.run_forever()

            self.connected = False
            self.authenticated = False

            if self._stop.is_set():
                break

            if self.reconnect_attempts >= self.max_reconnects:
                logger.error('Max reconnection attempts reached')
                break

            self.reconnect_attempts += 1
            delay = self.reconnect_delay * min(self.reconnect_attempts, 5)
            logger.info(
                f"Reconnecting in {delay:.0f}s "
                f"(attempt {self.reconnect_attempts}/{self.max_reconnects})"
            )
            if self._stop.wait(delay):
                break

    def _on_open(self, ws):
        logger.info('WebSocket connected')
        self.connected = True
        self.reconnect_attempts = 0

        self.send('authenticate', {
            'userId': self.user_id,
            'agentId': self.agent_id,
        })

        threading.Thread(target=self._ping_loop, args=(ws,), name='agent-ping', daemon=True).start()

    def _ping_loop(self, ws):
        while not self._stop.wait(self.ping_interval):
            if ws is not self._ws or not self.connected:
                return
            self.send('ping', {})

    def _on_message(self, ws, message):
        try:
            data = json.loads(message)
        except ValueError as e:
            logger.error(f"Error handling message: {e}")
            return

        msg_type = data.get('type') if isinstance(data, dict) else None

        if msg_type == 'authenticated':
            self.authenticated = True
            logger.info('WebSocket authenticated')
        elif msg_type == 'ping':
            self.send('pong', {})
        else:
            logger.debug(f"Received message: {msg_type}")

    def _on_error(self, ws, error):
        logger.error(f"WebSocket error: {error}")

    def _on_close(self, ws, close_status_code=None, close_msg=None):
        logger.info('WebSocket disconnected')
        self.connected = False
        self.authenticated = False

    def is_ready(self) -> bool:
        """True once the socket is open and the server accepted the agent."""
        return self.connected and self.authenticated

    def send(self, msg_type: str, data: Dict[str, Any]) -> bool:
        """
        Send one message.

        Returns:
            False if the socket is not open or the send failed
        """
        ws = self._ws
        if ws is None or not self.connected:
            logger.debug(f"Cannot send message - WebSocket not open (type: {msg_type})")
            return False

        try:
            ws.send(json.dumps({
                'type': msg_type,
                'data': data,
                'timestamp': _timestamp(),
            }))
            return True
        except (websocket.WebSocketException, OSError) as e:
            logger.debug(f"Error sending {msg_type} message: {e}")
            return False

    def disconnect(self, timeout: float = 5.0):
        """Stop reconnecting, close the socket and wait for the thread."""
        self._stop.set()
        if self._ws is not None:
            self._ws.close()
        if self._thread is not None:
            self._thread.join(timeout)
        self.connected = False
        self.authenticated = False


class Notifier:
    """Notification helpers; subclasses implement notify()."""

    def notify(self, msg_type: str, data: Dict[str, Any]) -> bool:
        raise NotImplementedError

    def backup_started(self, config_id: str, config_name: str) -> bool:
        return self.notify('backup_started', {
            'configId': config_id,
            'configName': config_name,
            'timestamp': _timestamp(),
        })

    def backup_progress(self, config_id: str, config_name: str, event: ProgressEvent) -> bool:
        return self.notify('backup_progress', {
            'configId': config_id,
            'configName': config_name,
            'progress': event.to_dict(),
            'timestamp': _timestamp(),
        })

    def backup_completed(self, config_id: str, config_name: str, stats: Dict[str, Any]) -> bool:
        return self.notify('backup_completed', {
            'configId': config_id,
            'configName': config_name,
            'stats': stats,
            'timestamp': _timestamp(),
        })

    def backup_failed(self, config_id: str, config_name: str, error) -> bool:
        data = {
            'configId': config_id,
            'configName': config_name,
            'timestamp': _timestamp(),
        }
        if hasattr(error, 'user_message'):
            data['error'] = error.user_message
            data['errorCategory'] = error.category
            data['retriable'] = error.retriable
        else:
            data['error'] = str(error)
        return self.notify('backup_failed', data)

    def agent_log(self, level: str, message: str, metadata: Optional[Dict[str, Any]] = None) -> bool:
        return self.notify('agent_log', {
            'level': level,
            'message': message,
            'metadata': metadata or {},
            'timestamp': _timestamp(),
        })

    def close(self):
        pass


class NullNotifier(Notifier):
    """Used when no connection is configured; every notification is dropped."""

    def notify(self, msg_type, data):
        return False


class ProgressNotifier(Notifier):
    """Non-blocking notifier backed by a bounded queue and a sender thread."""

    def __init__(self, connection: AgentConnection, queue_size: int = 100):
        self.connection = connection
        self.queue = queue.Queue(maxsize=queue_size)
        self.dropped = 0
        self._thread = None

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._drain, name='progress-notifier', daemon=True)
        self._thread.start()

    def _drain(self):
        while True:
            item = self.queue.get()
            if item is _STOP:
                break
            msg_type, data = item
            self.connection.send(msg_type, data)

    def notify(self, msg_type: str, data: Dict[str, Any]) -> bool:
        """
        Queue a notification without blocking.

        Returns:
            False if it was dropped (connection not ready or queue full)
        """
        if not self.connection.is_ready():
            return False

        try:
            self.queue.put_nowait((msg_type, data))
            return True
        except queue.Full:
            self.dropped += 1
            logger.debug(f"Notification queue full, dropped {msg_type} ({self.dropped} dropped)")
            return False

    def close(self, timeout: float = 5.0):
        """Flush queued notifications, stop the sender and disconnect."""
        if self._thread is not None:
            try:
                self.queue.put(_STOP, timeout=timeout)
            except queue.Full:
                logger.debug('Notification queue still full on shutdown')
            self._thread.join(timeout)
            self._thread = None
        self.connection.disconnect()
