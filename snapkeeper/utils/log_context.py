"""
Host-labelled logging.

Concurrent workers back up different hosts at the same time, so the host a
log line belongs to is carried on every record instead of being inferred
from the running thread:

- host_logger(): LoggerAdapter that stamps records with a host
- HostContextFilter: labels records without a host as 'global'
- HostRoutingHandler: writes each host's records to its own file
"""

import os
import logging
import threading
from logging.handlers import RotatingFileHandler
from typing import Dict, Optional

GLOBAL_HOST = 'global'


def host_logger(name: str, host: Optional[str] = None) -> logging.LoggerAdapter:
    """
    Get a logger whose records are labelled with a host.

    Args:
        name: Logger name (usually the module's __name__)
        host: Host key, or None for records that belong to no host

    Returns:
        LoggerAdapter adding the 'host' attribute to each record
    """
    return logging.LoggerAdapter(logging.getLogger(name), {'host': host or GLOBAL_HOST})


class HostContextFilter(logging.Filter):
    """Make sure every record has a 'host' attribute for the formatters."""

    def filter(self, record):
        if not getattr(record, 'host', None):
            record.host = GLOBAL_HOST
        return True


class HostRoutingHandler(logging.Handler):
    """
    Write records of each host to <log_dir>/<host>.log.

    Records labelled 'global' are not written by this handler.
    """

    def __init__(self, log_dir: str, max_bytes: int = 10485760, backup_count: int = 10):
        super().__init__()
        self.log_dir = log_dir
        self.max_bytes = max_bytes
        self.backup_count = backup_count
        self._handlers: Dict[str, RotatingFileHandler] = {}
        self._handlers_lock = threading.Lock()

    def _handler_for(self, host: str) -> RotatingFileHandler:
        with self._handlers_lock:
            handler = self._handlers.get(host)
            if handler is None:
                os.makedirs(self.log_dir, exist_ok=True)
                handler = RotatingFileHandler(
                    os.path.join(self.log_dir, f"{host}.log"),
                    maxBytes=self.max_bytes,
                    backupCount=self.backup_count
                )
                handler.setFormatter(self.formatter)
                self._handlers[host] = handler
            return handler

    def emit(self, record):
        host = getattr(record, 'host', None)
        if not host or host == GLOBAL_HOST:
            return
        try:
            self._handler_for(host).emit(record)
        except Exception:
            self.handleError(record)

    def setFormatter(self, fmt):
        super().setFormatter(fmt)
        with self._handlers_lock:
            for handler in self._handlers.values():
                handler.setFormatter(fmt)

    def close(self):
        with self._handlers_lock:
            for handler in self._handlers.values():
                handler.close()
            self._handlers.clear()
        super().close()
