"""Exception types raised by the lot engine."""
from __future__ import annotations


class LotEngineError(Exception):
    """Base class for lot engine failures."""


class ValidationError(LotEngineError, ValueError):
    """A trade record or request is malformed."""


class ConfigError(LotEngineError, ValueError):
    """Exit configuration is missing or out of bounds."""


class LockTimeout(LotEngineError, TimeoutError):
    """A per-symbol lock could not be acquired within its lease window."""

    def __init__(self, key: str, timeout: float):
        super().__init__(f"Timed out after {timeout:.1f}s waiting for lock on {key}")
        self.key = key
        self.timeout = timeout
