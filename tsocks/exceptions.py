"""
Custom exceptions for TSocks.

Provides specific exception types for every stage of the tunnel lifecycle
so failures can be logged and surfaced with the stage that produced them.
"""

from typing import Optional


class TSocksError(Exception):
    """Base exception for all TSocks errors."""

    # Errors that leave the tunnel non-functional are shown to the user
    user_visible = False


# ---------------- Configuration Errors ----------------

class ConfigError(TSocksError):
    """Base class for configuration errors."""
    pass


class ConfigInvalid(ConfigError):
    """Session config file is missing, empty, unreadable or malformed."""

    user_visible = True

    def __init__(self, path: str, reason: str):
        super().__init__(f"Invalid config {path}: {reason}")
        self.path = path
        self.reason = reason


class ProxyConfigError(ConfigError):
    """Proxy configuration violates an invariant."""
    pass


# ---------------- Interface Errors ----------------

class InterfaceError(TSocksError):
    """Base class for virtual interface errors."""
    pass


class InterfaceEstablishFailed(InterfaceError):
    """The OS refused to establish the virtual interface."""

    user_visible = True

    def __init__(self, interface_name: str, reason: str):
        super().__init__(f"Cannot establish {interface_name}: {reason}")
        self.interface_name = interface_name
        self.reason = reason


# ---------------- Engine Errors ----------------

class EngineError(TSocksError):
    """Base class for tunnel engine errors."""
    pass


class EngineStartFailed(EngineError):
    """The native engine rejected the interface descriptor or config."""

    user_visible = True

    def __init__(self, reason: str, fd: Optional[int] = None):
        super().__init__(f"Tunnel engine failed to start: {reason}")
        self.reason = reason
        self.fd = fd


class EngineUnavailable(EngineStartFailed):
    """The native engine library could not be loaded."""

    def __init__(self, library: str, reason: str):
        super().__init__(f"{library} unavailable: {reason}")
        self.library = library
        self.reason = reason


# ---------------- Proxy Errors ----------------

class ProxyError(TSocksError):
    """Base class for proxy process errors."""
    pass


class ProxyLaunchFailed(ProxyError):
    """The proxy subprocess could not be spawned."""

    def __init__(self, binary: str, reason: str):
        super().__init__(f"Cannot launch proxy {binary}: {reason}")
        self.binary = binary
        self.reason = reason


class ProxyCrashed(ProxyError):
    """The proxy subprocess exited while it was believed running."""

    def __init__(self, exit_code: Optional[int], attempt: int):
        super().__init__(f"Proxy exited unexpectedly (code={exit_code}, attempt {attempt})")
        self.exit_code = exit_code
        self.attempt = attempt


class ProxyFatal(ProxyError):
    """The proxy kept crashing and the restart budget is exhausted."""

    user_visible = True

    def __init__(self, attempts: int, exit_code: Optional[int] = None):
        super().__init__(
            f"Proxy failed after {attempts} restart attempts (last code={exit_code})"
        )
        self.attempts = attempts
        self.exit_code = exit_code


# ---------------- Stats Errors ----------------

class StatsUnavailable(TSocksError):
    """The engine returned no counters for a poll cycle."""
    pass
