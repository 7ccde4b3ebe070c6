"""
Error taxonomy raised by the gomafia.pro scraper and the persistence layer.

The retry helper dispatches on these types: a PermanentError is surfaced
immediately, a TransientError is retried with backoff. Exceptions from
outside this hierarchy are classified by message (see sync.retry).
"""


class GomafiaError(Exception):
    """Base class for errors raised while talking to gomafia.pro."""

    code = "GOMAFIA_ERROR"


class PermanentError(GomafiaError):
    """The operation cannot succeed on retry (missing page, bad data, access denied)."""

    code = "PERMANENT"


class TransientError(GomafiaError):
    """The operation may succeed on retry (timeouts, 5xx, dropped connections)."""

    code = "TRANSIENT"


class EntityNotFoundError(PermanentError):
    """The requested player/club/tournament/game page does not exist."""

    code = "NOT_FOUND"


class ScraperBlockedError(TransientError):
    """The site answered with a rate-limit or bot-protection page."""

    code = "BLOCKED"


def error_code(exc: BaseException) -> str:
    """Stable error code for a SkippedEntity row."""
    if isinstance(exc, GomafiaError):
        return exc.code
    return type(exc).__name__.upper()
