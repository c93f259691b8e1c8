"""
ShadowPilot Errors
==================
Error taxonomy for the proxy control plane.

Process exit is not an error: it is a normal ``stopped`` transition and the
exit code is only logged. Malformed log lines and traffic tokens never raise.
"""

from __future__ import annotations


class ShadowPilotError(Exception):
    """Base class for all ShadowPilot errors."""


class InvalidConfiguration(ShadowPilotError):
    """A proxy configuration failed validation (user-correctable)."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid configuration: {reason}")


class BinaryNotFound(ShadowPilotError):
    """The proxy executable is missing from its expected location."""

    def __init__(self, path: str = ""):
        self.path = path
        msg = "Proxy executable not found"
        if path:
            msg += f": {path}"
        super().__init__(msg)


class AlreadyRunning(ShadowPilotError):
    """``start()`` was called while a session is starting or running."""

    def __init__(self):
        super().__init__("Proxy process is already running")


class StartFailed(ShadowPilotError):
    """The OS refused to spawn the proxy process."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Proxy start failed: {reason}")


class IndexOutOfRange(ShadowPilotError, IndexError):
    """A user rule index does not exist."""

    def __init__(self, index: int, size: int):
        self.index = index
        self.size = size
        super().__init__(f"Rule index {index} out of range (0..{size - 1})" if size else
                         f"Rule index {index} out of range (no user rules)")
