"""
Exclusive lock serializing apply and rollback.

Two layers: an asyncio.Lock for callers inside this process, and an
fcntl advisory lock on a lock file so a restarted process cannot race one
that is still running. Both are acquired within one bounded deadline.
"""
import asyncio
import fcntl
import os
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

from loguru import logger

from relayconf.constants import LOCK_POLL_INTERVAL_SECONDS, LOCK_TIMEOUT_SECONDS
from relayconf.exceptions import Busy


class LockManager:
    def __init__(self, lock_file: Path, timeout: float = LOCK_TIMEOUT_SECONDS):
        self.lock_file = Path(lock_file)
        self.timeout = timeout
        self._lock = asyncio.Lock()
        self._holder = None

    @property
    def locked(self) -> bool:
        return self._lock.locked()

    @property
    def holder(self):
        """Description of the operation currently holding the lock, if any."""
        return self._holder

    @asynccontextmanager
    async def acquire(self, operation: str = "apply") -> AsyncIterator[None]:
        """
        Hold the exclusive lock for the duration of the block.

        Raises:
            Busy: If either lock layer cannot be taken before the timeout
        """
        deadline = time.monotonic() + self.timeout
        try:
            await asyncio.wait_for(self._lock.acquire(), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"{operation}: in-process lock held by '{self._holder}', giving up")
            raise Busy() from None

        fd = None
        try:
            fd = await self._flock(deadline, operation)
            self._holder = operation
            logger.debug(f"{operation}: lock acquired")
            yield
        finally:
            self._holder = None
            if fd is not None:
                try:
                    fcntl.flock(fd, fcntl.LOCK_UN)
                finally:
                    os.close(fd)
            self._lock.release()
            logger.debug(f"{operation}: lock released")

    async def _flock(self, deadline: float, operation: str) -> int:
        self.lock_file.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.lock_file, os.O_RDWR | os.O_CREAT, 0o600)
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    os.close(fd)
                    logger.warning(f"{operation}: {self.lock_file} is locked by another process")
                    raise Busy("Configuration is locked by another process") from None
                await asyncio.sleep(LOCK_POLL_INTERVAL_SECONDS)
                continue
            except Exception:
                os.close(fd)
                raise
            os.ftruncate(fd, 0)
            os.write(fd, f"{os.getpid()} {operation}\n".encode())
            return fd
