"""
Error taxonomy for usage accounting.

Every error raised while accounting a single request derives from
TokenMeterError so the orchestrator can contain it at its boundary.
"""


class TokenMeterError(Exception):
    """Base class for all accounting errors."""


class ConfigurationError(TokenMeterError):
    """Required settings are missing or invalid. Fatal at startup."""


class ConnectivityError(TokenMeterError):
    """A backing store could not be reached."""


class PersistenceError(TokenMeterError):
    """A read or write against the relational store failed."""


class QuotaExceededError(TokenMeterError):
    """The free daily allowance cannot cover the requested tokens.

    Expected and user-visible; not treated as a failure for logging.
    """
    def __init__(self, message: str, remaining: int):
        super().__init__(message)
        self.remaining = remaining


class ExternalCallError(TokenMeterError):
    """The rewrite call failed."""


class RewriteTimeoutError(ExternalCallError):
    """The rewrite call did not complete within its timeout."""
