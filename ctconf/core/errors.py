"""Error taxonomy for container configuration operations.

Every error may carry the container id and the operation that failed so a
message is diagnosable without re-running at a higher verbosity.
"""
from typing import List, Optional


class CtconfError(Exception):
    """Base class for all ctconf errors."""

    def __init__(self, message: str, vmid: Optional[int] = None, operation: Optional[str] = None):
        self.message = message
        self.vmid = vmid
        self.operation = operation
        super().__init__(message)

    def __str__(self) -> str:
        prefix = []
        if self.vmid is not None:
            prefix.append(f"CT {self.vmid}")
        if self.operation:
            prefix.append(self.operation)
        if prefix:
            return f"{' '.join(prefix)}: {self.message}"
        return self.message


class NotFoundError(CtconfError):
    """Container config or snapshot does not exist."""
    pass


class ConfigParseError(CtconfError):
    """Raised when the on-disk config text cannot be parsed."""

    def __init__(self, message: str, key: Optional[str] = None, value: Optional[str] = None, **kwargs):
        self.key = key
        self.value = value
        super().__init__(message, **kwargs)


class DuplicateKeyError(ConfigParseError):
    """A scalar option is defined twice in one section."""
    pass


class UnknownKeyError(ConfigParseError):
    """A key outside the accepted vocabulary."""
    pass


class InvalidValueError(ConfigParseError):
    """A value failed the validator of its key."""
    pass


class DuplicateNameError(CtconfError):
    """A snapshot or container with this name already exists."""
    pass


class UnsupportedError(CtconfError):
    """Operation not supported by the storage backend or current state."""
    pass


class LockedError(CtconfError):
    """Container carries a lock token from another long-running operation."""

    def __init__(self, message: str, token: Optional[str] = None, **kwargs):
        self.token = token
        super().__init__(message, **kwargs)


class LockError(CtconfError):
    """Raised when unable to acquire the container lock."""
    pass


class LockTimeoutError(LockError):
    """Lock was not acquired within the timeout."""
    pass


class InconsistentError(CtconfError):
    """Persisted state does not match what the operation expects."""
    pass


class CGroupModeError(CtconfError):
    """The host cgroup layout could not be classified."""
    pass


class ExternalCommandError(CtconfError):
    """An external command exited non-zero or timed out."""

    def __init__(
        self,
        cmd: List[str],
        returncode: Optional[int] = None,
        stderr: str = "",
        timed_out: bool = False,
        **kwargs,
    ):
        self.cmd = list(cmd)
        self.returncode = returncode
        self.stderr = stderr
        self.timed_out = timed_out
        if timed_out:
            message = f"command '{' '.join(self.cmd)}' timed out"
        else:
            message = f"command '{' '.join(self.cmd)}' failed: exit code {returncode}"
            if stderr:
                message += f" ({stderr.strip()})"
        super().__init__(message, **kwargs)
