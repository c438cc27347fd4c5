"""Per-container advisory locking.

One exclusive flock per container id, backed by a well-known lock file. A lock
handle is re-entrant inside the process that owns it: a second acquire only
bumps a reference count, and the flock is dropped when the count reaches zero.
"""
import fcntl
import os
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from ctconf.core.errors import LockError, LockTimeoutError
from ctconf.core.logger import get_logger

logger = get_logger(__name__)

DEFAULT_LOCK_TIMEOUT = 10
POLL_INTERVAL = 0.1


class ContainerLock:
    """Re-entrant file lock for a single container."""

    def __init__(self, vmid: int, lock_file: Path, timeout: int = DEFAULT_LOCK_TIMEOUT):
        """Initialize lock.

        Args:
            vmid: Container ID the lock protects
            lock_file: Path to lock file
            timeout: Seconds to wait for lock (0 = fail immediately)
        """
        self.vmid = vmid
        self.lock_file = Path(lock_file)
        self.timeout = timeout
        self.lock_fd = None
        self.refcount = 0
        self._owner_pid = None

    @property
    def held(self) -> bool:
        return self.lock_fd is not None and self._owner_pid == os.getpid()

    def acquire(self, timeout: Optional[int] = None) -> bool:
        """Acquire the lock, or bump the reference count if already held.

        Returns:
            True if lock acquired successfully

        Raises:
            LockTimeoutError: If the lock is not free within the timeout
            LockError: If the lock file cannot be opened
        """
        if self.held:
            self.refcount += 1
            logger.debug(f"Re-entered lock {self.lock_file} (refcount {self.refcount})")
            return True

        if self.lock_fd is not None:
            # Inherited across fork(): the flock belongs to the parent.
            self.lock_fd = None
            self.refcount = 0

        timeout = self.timeout if timeout is None else timeout

        try:
            self.lock_file.parent.mkdir(parents=True, exist_ok=True)
            lock_fd = open(self.lock_file, 'a+')
        except OSError as e:
            raise LockError(f"can't open lock file '{self.lock_file}' - {e}", vmid=self.vmid)

        start_time = time.monotonic()
        waiting_logged = False
        while True:
            try:
                fcntl.flock(lock_fd.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except InterruptedError:
                continue
            except BlockingIOError:
                if not waiting_logged:
                    logger.debug(f"Waiting for lock {self.lock_file}")
                    waiting_logged = True

                if time.monotonic() - start_time >= timeout:
                    lock_info = self._read_lock_info()
                    lock_fd.close()
                    raise LockTimeoutError(
                        f"can't lock file '{self.lock_file}' - got timeout after {timeout}s "
                        f"(held by PID {lock_info['pid']} since {lock_info['time']})",
                        vmid=self.vmid,
                    )

                time.sleep(POLL_INTERVAL)
            except OSError as e:
                lock_fd.close()
                raise LockError(f"can't lock file '{self.lock_file}' - {e}", vmid=self.vmid)

        lock_fd.seek(0)
        lock_fd.truncate()
        lock_fd.write(f"{os.getpid()}\n")
        lock_fd.write(f"{time.strftime('%Y-%m-%d %H:%M:%S')}\n")
        lock_fd.flush()

        self.lock_fd = lock_fd
        self.refcount = 1
        self._owner_pid = os.getpid()
        logger.debug(f"Acquired lock: {self.lock_file}")
        return True

    def release(self):
        """Drop one reference; unlock when the last reference is gone."""
        if not self.held:
            return

        self.refcount -= 1
        if self.refcount > 0:
            return

        try:
            fcntl.flock(self.lock_fd.fileno(), fcntl.LOCK_UN)
            self.lock_fd.close()
            logger.debug(f"Released lock: {self.lock_file}")
        finally:
            self.lock_fd = None
            self.refcount = 0
            self._owner_pid = None

    def _read_lock_info(self) -> dict:
        """Read info from lock file about who holds it."""
        try:
            with open(self.lock_file) as f:
                lines = f.readlines()
            if len(lines) >= 2:
                return {'pid': lines[0].strip(), 'time': lines[1].strip()}
        except OSError:
            pass

        return {'pid': 'unknown', 'time': 'unknown'}

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False


class LockManager:
    """Process-local table of container lock handles keyed by container id."""

    def __init__(self, lock_dir: Path, timeout: int = DEFAULT_LOCK_TIMEOUT):
        self.lock_dir = Path(lock_dir)
        self.timeout = timeout
        self._handles: Dict[int, ContainerLock] = {}
        self._pid = os.getpid()

    def lock_filename(self, vmid: int) -> Path:
        return self.lock_dir / f"pve-config-{vmid}.lock"

    def handle(self, vmid: int) -> ContainerLock:
        """Return the lock handle for a container, creating it on first use."""
        if self._pid != os.getpid():
            self._handles = {}
            self._pid = os.getpid()

        lock = self._handles.get(vmid)
        if lock is None:
            lock = ContainerLock(vmid, self.lock_filename(vmid), timeout=self.timeout)
            self._handles[vmid] = lock
        return lock

    def acquire(self, vmid: int, timeout: Optional[int] = None) -> ContainerLock:
        lock = self.handle(vmid)
        lock.acquire(timeout)
        return lock

    def release(self, vmid: int):
        lock = self._handles.get(vmid)
        if lock is not None:
            lock.release()

    @contextmanager
    def locked(self, vmid: int, timeout: Optional[int] = None):
        """Context manager holding the container lock for the block.

        Usage:
            with locks.locked(100):
                conf = store.load(100)
                ...
                store.write(100, conf)
        """
        lock = self.acquire(vmid, timeout)
        try:
            yield lock
        finally:
            lock.release()

    def lock_container(self, vmid: int, code: Callable[..., Any], *args,
                       timeout: Optional[int] = None, **kwargs) -> Any:
        """Run ``code`` while holding the container lock and return its result.

        The lock is released on every exit path; a failure of ``code`` is
        re-raised after the release.
        """
        with self.locked(vmid, timeout):
            return code(*args, **kwargs)


def check_lock_status(lock_file: Path) -> Optional[dict]:
    """Check whether a container lock file is currently held.

    Returns:
        Dict with lock info if held, None if free
    """
    lock_path = Path(lock_file)
    if not lock_path.exists():
        return None

    with open(lock_path) as f:
        try:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            f.seek(0)
            lines = f.readlines()
            if len(lines) >= 2:
                return {'pid': lines[0].strip(), 'time': lines[1].strip(), 'lock_file': str(lock_path)}
            return {'pid': 'unknown', 'time': 'unknown', 'lock_file': str(lock_path)}
        fcntl.flock(f.fileno(), fcntl.LOCK_UN)
        return None
