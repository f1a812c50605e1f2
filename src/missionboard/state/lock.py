from __future__ import annotations

import json
import logging
import os
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from missionboard.errors import LockTimeoutError

logger = logging.getLogger(__name__)


class StoreLock:
    """Advisory cross-process lock over a mission directory.

    The lock is a file created with ``O_CREAT | O_EXCL``; whoever creates it
    owns the store until the file is removed. Acquisition retries with
    exponential backoff and gives up with ``LockTimeoutError``. A lock file
    older than ``stale_seconds`` is assumed to belong to a crashed process and
    is removed. The lock is reentrant within one ``StoreLock`` instance.
    """

    def __init__(
        self,
        lock_file: Path,
        *,
        timeout_seconds: float = 5.0,
        initial_backoff_seconds: float = 0.02,
        max_backoff_seconds: float = 0.5,
        stale_seconds: float = 10.0,
    ) -> None:
        self.lock_file = lock_file
        self.timeout_seconds = max(0.0, float(timeout_seconds))
        self.initial_backoff_seconds = max(0.001, float(initial_backoff_seconds))
        self.max_backoff_seconds = max(self.initial_backoff_seconds, float(max_backoff_seconds))
        self.stale_seconds = float(stale_seconds)
        self._depth = 0

    @property
    def held(self) -> bool:
        return self._depth > 0

    def is_locked(self) -> bool:
        return self.lock_file.exists()

    def _try_create(self) -> bool:
        try:
            fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            return False
        try:
            owner = {"pid": os.getpid(), "acquired_at": time.time()}
            os.write(fd, json.dumps(owner).encode("utf-8"))
        finally:
            os.close(fd)
        return True

    @staticmethod
    def _read_owner(path: Path) -> bytes | None:
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None

    def _break_if_stale(self) -> bool:
        """Remove a stale lock file, but only the one whose owner was inspected.

        The file is renamed aside before removal. If the renamed file no longer
        carries the owner seen as stale, another waiter already replaced it and
        the fresh lock is linked back into place.
        """
        if self.stale_seconds <= 0:
            return False
        try:
            age = time.time() - self.lock_file.stat().st_mtime
        except FileNotFoundError:
            return True
        if age < self.stale_seconds:
            return False
        owner = self._read_owner(self.lock_file)
        if owner is None:
            return True
        aside = self.lock_file.with_name(
            f"{self.lock_file.name}.stale-{os.getpid()}-{uuid.uuid4().hex[:8]}"
        )
        try:
            os.rename(self.lock_file, aside)
        except FileNotFoundError:
            return True
        if self._read_owner(aside) != owner:
            self._restore(aside)
            return False
        logger.warning("Removing stale lock %s (age %.1fs)", self.lock_file, age)
        aside.unlink(missing_ok=True)
        return True

    def _restore(self, aside: Path) -> None:
        try:
            os.link(aside, self.lock_file)
        except FileExistsError:
            logger.warning(
                "Lock %s was re-created before %s could be restored", self.lock_file, aside
            )
        finally:
            aside.unlink(missing_ok=True)

    def acquire(self) -> None:
        if self._depth:
            self._depth += 1
            return
        self.lock_file.parent.mkdir(parents=True, exist_ok=True)
        start = time.monotonic()
        backoff = self.initial_backoff_seconds
        attempts = 0
        while True:
            attempts += 1
            if self._try_create():
                break
            if self._break_if_stale():
                continue
            elapsed = time.monotonic() - start
            if elapsed >= self.timeout_seconds:
                raise LockTimeoutError(
                    f"Timed out after {self.timeout_seconds:.1f}s waiting for lock "
                    f"{self.lock_file}",
                    details={"attempts": attempts, "lock_file": str(self.lock_file)},
                )
            time.sleep(min(backoff, self.timeout_seconds - elapsed))
            backoff = min(backoff * 2, self.max_backoff_seconds)
        self._depth = 1
        logger.debug("Acquired %s after %d attempt(s)", self.lock_file, attempts)

    def release(self) -> None:
        if self._depth == 0:
            return
        self._depth -= 1
        if self._depth:
            return
        try:
            self.lock_file.unlink()
        except FileNotFoundError:
            logger.warning("Lock %s vanished before release", self.lock_file)
        logger.debug("Released %s", self.lock_file)

    @contextmanager
    def hold(self) -> Iterator[None]:
        self.acquire()
        try:
            yield
        finally:
            self.release()
