"""Process-owned deploy lock.

The lock is a JSON file created with ``O_CREAT | O_EXCL`` so that two
processes racing for it cannot both win. A token whose owning process is no
longer alive is stale and is reclaimed by the next acquirer. Reclaiming happens
under an exclusive ``flock`` on a sidecar file and re-reads the token first,
so a lock that another acquirer has just taken over is never removed.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import socket
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import TypeAlias
from datetime import UTC, datetime
from pathlib import Path

from pushdeploy.core.errors import LockBusyError
from pushdeploy.models.deployment import LockToken

logger = logging.getLogger(__name__)

PidProbe: TypeAlias = Callable[[int], bool]

_CORRUPT = "corrupt"
_WRITE_GRACE_SECONDS = 5.0


def pid_alive(pid: int) -> bool:
    """Return True if a process with ``pid`` exists."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by another user.
        return True
    except OSError:
        return False
    return True


class LockManager:
    """Mutual exclusion for the deploy pipeline.

    Parameters
    ----------
    lock_path:
        Location of the lock file, usually inside the application directory.
    pid:
        Identity recorded as owner; defaults to the current process.
    is_alive:
        Liveness check for recorded owners.
    """

    def __init__(
        self,
        lock_path: Path,
        *,
        pid: int | None = None,
        is_alive: PidProbe | None = None,
    ) -> None:
        self.lock_path = lock_path
        self._pid = pid if pid is not None else os.getpid()
        self._is_alive = is_alive or pid_alive

    def acquire(self) -> LockToken:
        """Take the lock or raise :class:`LockBusyError` if a live owner holds it."""
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        # Two passes: the second runs only after a stale token was discarded.
        for _ in range(2):
            token = LockToken(
                owner_pid=self._pid,
                acquired_at=datetime.now(UTC),
                hostname=socket.gethostname(),
            )
            try:
                fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                existing = self._read()
                if existing is not None and self._is_alive(existing.owner_pid):
                    raise LockBusyError(existing.owner_pid) from None
                if existing is not None and existing.token_id == _CORRUPT and self._fresh():
                    # Another process is between creating and writing the file.
                    raise LockBusyError(existing.owner_pid) from None
                self._reclaim(existing)
                continue
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(token.as_payload(), handle)
            logger.info("Deploy lock acquired by pid %s", token.owner_pid)
            return token

        existing = self._read()
        raise LockBusyError(existing.owner_pid if existing is not None else -1)

    def release(self, token: LockToken) -> bool:
        """Remove the lock if ``token`` still owns it."""
        existing = self._read()
        if existing is None:
            logger.warning("Deploy lock already gone at release (token %s)", token.token_id)
            return False
        if existing.token_id != token.token_id:
            logger.warning(
                "Not releasing deploy lock owned by pid %s (token %s)",
                existing.owner_pid,
                existing.token_id,
            )
            return False
        self.lock_path.unlink(missing_ok=True)
        logger.info("Deploy lock released by pid %s", token.owner_pid)
        return True

    def holder(self) -> LockToken | None:
        """Return the live token, or None if the lock is free or stale."""
        existing = self._read()
        if existing is None or not self._is_alive(existing.owner_pid):
            return None
        return existing

    @contextmanager
    def hold(self) -> Iterator[LockToken]:
        token = self.acquire()
        try:
            yield token
        finally:
            self.release(token)

    def _read(self) -> LockToken | None:
        try:
            payload = json.loads(self.lock_path.read_text(encoding="utf-8"))
            return LockToken.from_payload(payload)
        except FileNotFoundError:
            return None
        except (json.JSONDecodeError, KeyError, TypeError, ValueError, OSError):
            logger.warning("Deploy lock file %s is unreadable", self.lock_path)
            return LockToken(owner_pid=-1, acquired_at=datetime.now(UTC), token_id=_CORRUPT)

    def _fresh(self) -> bool:
        try:
            age = time.time() - self.lock_path.stat().st_mtime
        except FileNotFoundError:
            return False
        return age < _WRITE_GRACE_SECONDS

    @property
    def reclaim_path(self) -> Path:
        return self.lock_path.with_name(self.lock_path.name + ".reclaim")

    @contextmanager
    def _reclaim_guard(self) -> Iterator[None]:
        fd = os.open(self.reclaim_path, os.O_CREAT | os.O_RDWR, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)

    def _reclaim(self, seen: LockToken | None) -> None:
        """Remove the stale token ``seen`` unless the file has changed hands since."""
        if seen is None:
            # Released between the failed create and the read.
            return
        with self._reclaim_guard():
            current = self._read()
            if current is None or current.token_id != seen.token_id:
                return
            if self._is_alive(current.owner_pid):
                return
            if current.token_id == _CORRUPT and self._fresh():
                return
            logger.warning(
                "Reclaiming stale deploy lock from dead pid %s (acquired %s)",
                current.owner_pid,
                current.acquired_at.isoformat(),
            )
            self.lock_path.unlink(missing_ok=True)
