"""Exception types raised by the live development server."""

from typing import Optional


class LiveDevError(Exception):
    """Base class for all livedev errors."""


class StartupError(LiveDevError):
    """The server could not start and has been left fully stopped."""


class BindError(StartupError):
    """A listener socket could not be bound."""

    def __init__(self, listener: str, host: str, port: int, reason: str):
        self.listener = listener
        self.host = host
        self.port = port
        super().__init__(f"Could not bind {listener} listener on {host}:{port}: {reason}")


class HmrTimeoutError(StartupError):
    """The external dev server never became reachable."""

    def __init__(self, profile: str, port: int, timeout: float):
        self.profile = profile
        self.port = port
        self.timeout = timeout
        super().__init__(
            f"{profile} dev server did not start in time "
            f"(port {port} unreachable after {timeout:g}s)"
        )


class MalformedFrameError(LiveDevError):
    """A socket-channel frame could not be decoded into a known message."""

    def __init__(self, reason: str, raw: Optional[str] = None):
        self.reason = reason
        self.raw = raw
        super().__init__(reason)
