"""Per-service convergence locks.

A service may only be converged by one run at a time. Inside a process a
``threading.Lock`` per name serializes threads; across processes an
``fcntl.flock`` on ``build/locks/<service>.lock`` does the same.
"""
from __future__ import annotations

import fcntl
import logging
import os
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator

from ..errors import ServiceLocked

log = logging.getLogger(__name__)

_POLL_INTERVAL = 0.1


class ServiceLocks:
    def __init__(self, lock_dir: Path, timeout: float = 30.0) -> None:
        self.lock_dir = lock_dir
        self.timeout = timeout
        self._guard = threading.Lock()
        self._thread_locks: Dict[str, threading.Lock] = {}

    def _thread_lock(self, service: str) -> threading.Lock:
        with self._guard:
            return self._thread_locks.setdefault(service, threading.Lock())

    @contextmanager
    def hold(self, service: str) -> Iterator[None]:
        """Hold the convergence token for ``service`` or raise ServiceLocked."""
        deadline = time.monotonic() + self.timeout
        thread_lock = self._thread_lock(service)
        if not thread_lock.acquire(timeout=self.timeout):
            raise ServiceLocked(
                f"{service}: another convergence is in progress in this process", service=service
            )
        try:
            self.lock_dir.mkdir(parents=True, exist_ok=True)
            fd = os.open(str(self.lock_dir / f"{service}.lock"), os.O_RDWR | os.O_CREAT, 0o644)
            try:
                self._flock(fd, service, deadline)
                try:
                    yield
                finally:
                    fcntl.flock(fd, fcntl.LOCK_UN)
            finally:
                os.close(fd)
        finally:
            thread_lock.release()

    def _flock(self, fd: int, service: str, deadline: float) -> None:
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                return
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    raise ServiceLocked(
                        f"{service}: another run is converging this service", service=service
                    ) from None
                log.debug("Waiting for convergence lock on %s", service)
                time.sleep(_POLL_INTERVAL)
