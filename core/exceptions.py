"""Shared exception types for the snipe engine, monitor and profile store."""

from typing import Optional


class SnipewatchError(RuntimeError):
    """Base class for all snipewatch errors."""


class TransientRemoteError(SnipewatchError):
    """Raised when the AMM or health endpoint fails in a way worth retrying."""

    def __init__(self, source: str, original: Optional[Exception] = None, status_code: Optional[int] = None):
        super().__init__(source)
        self.source = source
        self.original = original
        self.status_code = status_code


class TargetNotFound(SnipewatchError):
    """Raised when no pool matches a snipe's token address (may appear later)."""

    def __init__(self, identifier: str):
        super().__init__(f"Pool not found for token {identifier}")
        self.identifier = identifier


class ConfigurationError(SnipewatchError):
    """Invalid profile or application state; never retried."""


class LockContention(SnipewatchError):
    """Raised when another live process holds the profile lease."""

    def __init__(self, resource_name: str, holder_id: Optional[str] = None):
        super().__init__(f"Profile '{resource_name}' is in use elsewhere")
        self.resource_name = resource_name
        self.holder_id = holder_id


class NotLocked(SnipewatchError):
    """Raised when a profile write is attempted without holding its lease."""

    def __init__(self, resource_name: str):
        super().__init__(f"Profile '{resource_name}' must be locked by this process before saving")
        self.resource_name = resource_name


class AlreadyMonitoring(SnipewatchError):
    """Raised when start() is called on a monitor that is already polling."""


class AlreadyRunning(SnipewatchError):
    """Raised when a snipe run is requested while another is in progress."""


class MonitorTimeout(SnipewatchError):
    """Raised when wait_for_online() exceeds its deadline."""

    def __init__(self, timeout_seconds: float):
        super().__init__(f"Timeout waiting for network after {timeout_seconds:.1f}s")
        self.timeout_seconds = timeout_seconds
