"""Per-user, per-resource mutual exclusion.

Each ``(user_id, kind)`` pair maps to a lease in a table guarded by one coarse
condition variable. Leases expire, so a hung holder cannot block a user
forever: the next waiter reclaims an expired lease and the stale holder's
release becomes a no-op.

With cross-process locking enabled, the lease additionally holds an ``fcntl``
advisory lock on a sidecar file next to the user's data. The kernel drops it
when the owning process dies.
"""

from __future__ import annotations

import fcntl
import logging
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Callable, Dict, Iterator, Optional, Tuple, TypeVar

from ..config import env_flag, lock_lease_seconds, lock_timeout_seconds
from ..domain.errors import LockTimeoutError, StorageError
from ..domain.site_models import ResourceKind
from ..observability.metrics import observe_lock_wait

LOG = logging.getLogger("devbeaver.locks")

T = TypeVar("T")

_FILE_POLL_SECONDS = 0.05

_Key = Tuple[str, ResourceKind]


@dataclass
class _Lease:
    token: str
    key: _Key
    acquired_at: float
    expires_at: float
    handle: Optional[IO[str]] = None


class StateSynchronizer:
    def __init__(
        self,
        root: Optional[Path] = None,
        *,
        timeout: Optional[float] = None,
        lease_seconds: Optional[float] = None,
        cross_process: Optional[bool] = None,
    ) -> None:
        self._root = Path(root) if root is not None else None
        self._timeout = timeout if timeout is not None else lock_timeout_seconds()
        self._lease_seconds = lease_seconds if lease_seconds is not None else lock_lease_seconds()
        self._cross_process = cross_process if cross_process is not None else env_flag("DEVBEAVER_CROSS_PROCESS_LOCKS")
        if self._cross_process and self._root is None:
            raise ValueError("cross-process locking needs a root directory for lock files")
        self._cond = threading.Condition()
        self._leases: Dict[_Key, _Lease] = {}

    @property
    def timeout(self) -> float:
        return self._timeout

    def lock_path(self, user_id: str, kind: ResourceKind) -> Path:
        if self._root is None:
            raise ValueError("no lock root configured")
        return self._root / user_id / "locks" / f"{kind.value}.lock"

    def is_held(self, user_id: str, kind: ResourceKind) -> bool:
        with self._cond:
            lease = self._leases.get((user_id, kind))
            return lease is not None and lease.expires_at > time.monotonic()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    @contextmanager
    def hold(self, user_id: str, kind: ResourceKind) -> Iterator[None]:
        """Hold the ``(user_id, kind)`` lock for the duration of the block.

        Raises
        ------
        LockTimeoutError
            If the lock is not obtained within the configured timeout.
        """

        key = (user_id, kind)
        start = time.monotonic()
        deadline = start + self._timeout
        lease = self._acquire_local(key, deadline)
        try:
            self._acquire_file(lease, deadline)
        except BaseException:
            self._release(lease)
            raise
        waited = time.monotonic() - start
        observe_lock_wait(kind.value, waited)
        LOG.debug("lock_acquired", extra={"user_id": user_id, "kind": kind.value, "waited_s": waited})
        try:
            yield
        finally:
            self._release(lease)

    def with_lock(self, user_id: str, kind: ResourceKind, fn: Callable[[], T]) -> T:
        with self.hold(user_id, kind):
            return fn()

    # ------------------------------------------------------------------
    # Lease table
    # ------------------------------------------------------------------
    def _acquire_local(self, key: _Key, deadline: float) -> _Lease:
        with self._cond:
            while True:
                now = time.monotonic()
                current = self._leases.get(key)
                if current is None:
                    lease = _Lease(uuid.uuid4().hex, key, now, now + self._lease_seconds)
                    self._leases[key] = lease
                    return lease
                if current.expires_at <= now:
                    LOG.warning(
                        "lock_lease_reclaimed",
                        extra={
                            "user_id": key[0],
                            "kind": key[1].value,
                            "held_s": now - current.acquired_at,
                        },
                    )
                    # The process still owns the advisory lock, so the new lease inherits it
                    lease = _Lease(uuid.uuid4().hex, key, now, now + self._lease_seconds, handle=current.handle)
                    current.handle = None
                    self._leases[key] = lease
                    return lease
                if now >= deadline:
                    raise LockTimeoutError(
                        f"Timed out waiting for {key[1].value} lock of user {key[0]}",
                        waited_seconds=self._timeout,
                    )
                self._cond.wait(timeout=min(deadline, current.expires_at) - now)

    def _release(self, lease: _Lease) -> None:
        with self._cond:
            if self._leases.get(lease.key) is not lease:
                LOG.warning(
                    "lock_release_after_reclaim",
                    extra={"user_id": lease.key[0], "kind": lease.key[1].value},
                )
                return
            handle = lease.handle
            lease.handle = None
            if handle is not None:
                try:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
                finally:
                    handle.close()
            del self._leases[lease.key]
            self._cond.notify_all()

    # ------------------------------------------------------------------
    # Advisory file lock
    # ------------------------------------------------------------------
    def _acquire_file(self, lease: _Lease, deadline: float) -> None:
        if not self._cross_process or lease.handle is not None:
            return
        user_id, kind = lease.key
        path = self.lock_path(user_id, kind)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            handle = path.open("a+", encoding="utf-8")
        except OSError as exc:
            raise StorageError(f"Cannot open lock file {path}: {exc}") from exc
        while True:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    handle.close()
                    raise LockTimeoutError(
                        f"Timed out waiting for {kind.value} file lock of user {user_id}",
                        waited_seconds=self._timeout,
                    )
                time.sleep(_FILE_POLL_SECONDS)
            except OSError as exc:
                handle.close()
                raise StorageError(f"Cannot lock {path}: {exc}") from exc
        with self._cond:
            lease.handle = handle
