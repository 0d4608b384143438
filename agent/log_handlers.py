"""
Logging handlers that mirror agent logs to the server.

ServerLogHandler posts INFO and above to POST /log from a background
thread; NotifierLogHandler streams records as agent_log messages over the
WebSocket. Both drop records produced while they are sending, so a failing
transport cannot feed itself.
"""

import logging
import queue
import threading
from logging.handlers import QueueHandler, QueueListener


MAX_MESSAGE_LENGTH = 1000
LOG_QUEUE_SIZE = 1000

# Records from the transports themselves are never mirrored
IGNORED_LOGGERS = ('agent.notifier', 'urllib3', 'websocket')


def server_level(levelno: int) -> str:
    """Map a logging level onto the server's info|warning|error."""
    if levelno >= logging.ERROR:
        return 'error'
    if levelno >= logging.WARNING:
        return 'warning'
    return 'info'


def _is_mirrored(record):
    return not record.name.startswith(IGNORED_LOGGERS)


class _MirrorHandler(logging.Handler):

    def __init__(self, level=logging.NOTSET):
        super().__init__(level)
        self._local = threading.local()

    def filter(self, record):
        if not _is_mirrored(record):
            return False
        return super().filter(record)

    def emit(self, record):
        if getattr(self._local, 'active', False):
            return
        self._local.active = True
        try:
            message = self.format(record)[:MAX_MESSAGE_LENGTH]
            self.send(record, message)
        except Exception:
            self.handleError(record)
        finally:
            self._local.active = False

    def send(self, record, message):
        raise NotImplementedError


class _LogSender(_MirrorHandler):

    def __init__(self, api_client):
        super().__init__()
        self.api_client = api_client

    def send(self, record, message):
        self.api_client.send_log(server_level(record.levelno), message, {
            'logger': record.name,
        })


class _SenderListener(QueueListener):

    def __init__(self, log_queue, handler, local):
        super().__init__(log_queue, handler)
        self._local = local

    def handle(self, record):
        self._local.active = True
        try:
            super().handle(record)
        finally:
            self._local.active = False

    def enqueue_sentinel(self):
        try:
            self.queue.put_nowait(self._sentinel)
        except queue.Full:
            # Shutting down behind a full queue: the backlog is discarded
            while True:
                try:
                    self.queue.get_nowait()
                except queue.Empty:
                    break
            self.queue.put(self._sentinel)


class ServerLogHandler(QueueHandler):
    """
    Send INFO+ records to the server's log endpoint.

    Records are queued and posted by a worker thread, so logging never waits
    on the server. When the queue is full new records are dropped and
    counted in `dropped`. Call close() to stop the worker.
    """

    def __init__(self, api_client, level=logging.INFO, queue_size=LOG_QUEUE_SIZE):
        super().__init__(queue.Queue(queue_size))
        self.setLevel(level)
        self.api_client = api_client
        self.dropped = 0
        self._local = threading.local()
        self._sender = _SenderListener(self.queue, _LogSender(api_client), self._local)
        self._sender.start()

    def filter(self, record):
        if not _is_mirrored(record):
            return False
        return super().filter(record)

    def emit(self, record):
        # Records logged by the worker while it sends stay local
        if getattr(self._local, 'active', False):
            return
        super().emit(record)

    def enqueue(self, record):
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            self.dropped += 1

    def close(self):
        if self._sender is not None:
            self._sender.stop()
            self._sender = None
        super().close()


class NotifierLogHandler(_MirrorHandler):
    """Stream records to the dashboard as agent_log notifications."""

    def __init__(self, notifier, level=logging.INFO):
        super().__init__(level)
        self.notifier = notifier

    def send(self, record, message):
        self.notifier.agent_log(record.levelname.lower(), message, {
            'logger': record.name,
        })
