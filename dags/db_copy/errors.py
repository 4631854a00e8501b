# ============================== Error taxonomy ===============================


class DbCopyError(Exception):
    """Base class for every error raised by the copy engine."""


class StrategyParseError(DbCopyError, ValueError):
    """A strategy directive line could not be parsed."""

    def __init__(self, line: str, token: str, reason: str):
        self.line = line
        self.token = token
        self.reason = reason
        super().__init__(f"Invalid strategy directive {line!r}: {reason} (at {token!r})")


class TokenParseError(DbCopyError, ValueError):
    """A version token text is not 8 bytes of hex."""


class CapabilityMismatch(DbCopyError):
    """Table lacks a column its strategy needs."""


class TransientDatabaseError(DbCopyError):
    """Connection loss, timeout or similar; the table may be retried."""


class FatalConfigurationError(DbCopyError):
    """Configuration or schema metadata needed to start is missing."""


class SyncCancelled(DbCopyError):
    """Raised between stage boundaries once a stop was requested."""
