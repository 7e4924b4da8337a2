"""Exception hierarchy for cytube-bot.

Connection failures surface to the orchestrator as these exceptions.
Economy failures never do: the coin-flip engine turns them into results.
"""

from __future__ import annotations


class BotError(Exception):
    """Base class for all bot errors."""


# ── Transport ────────────────────────────────────────────────

class TransportError(BotError):
    """The link to the CyTube server failed."""


class TransportConnectError(TransportError):
    """The server refused or dropped the connection attempt."""


class RateLimitedError(TransportConnectError):
    """The server reported a rate limit while connecting."""


class ConnectTimeoutError(TransportError):
    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"Connection timeout after {timeout:g}s")


class SocketConfigError(TransportError):
    """The per-channel socket config could not be fetched or was empty."""


class ChannelJoinError(TransportError):
    """Joining the channel failed."""


class ChannelPasswordError(ChannelJoinError):
    def __init__(self, channel: str) -> None:
        self.channel = channel
        super().__init__(f"Channel {channel} requires password")


class ChannelJoinTimeoutError(ChannelJoinError):
    def __init__(self, channel: str, timeout: float) -> None:
        self.channel = channel
        self.timeout = timeout
        super().__init__(f"Channel join timeout for {channel} after {timeout:g}s")


# ── Preconditions ────────────────────────────────────────────

class PreconditionError(BotError):
    """An operation was called in a state that does not allow it."""


class AlreadyConnectedError(PreconditionError):
    def __init__(self, state: str) -> None:
        self.state = state
        super().__init__(f"Already {state}")


class ConnectThrottledError(PreconditionError):
    def __init__(self, wait_seconds: float) -> None:
        self.wait_seconds = wait_seconds
        super().__init__(f"Too soon to reconnect. Wait {wait_seconds:.3f}s")


class NotConnectedError(PreconditionError):
    def __init__(self) -> None:
        super().__init__("Not connected to server")


# ── Authentication ───────────────────────────────────────────

class AuthenticationError(BotError):
    """Login was rejected or never answered."""


class LoginFailedError(AuthenticationError):
    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Login failed: {reason}")


class LoginTimeoutError(AuthenticationError):
    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"Login timeout after {timeout:g}s")
