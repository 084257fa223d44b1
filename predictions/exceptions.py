import functools
import logging
import time

from django.conf import settings
from django.db import InterfaceError, OperationalError, connection

logger = logging.getLogger(__name__)


class EngineError(Exception):
    """Base exception for match lifecycle and prediction errors."""
    code = "ENGINE_ERROR"

    def __init__(self, message, code=None):
        self.message = message
        if code:
            self.code = code
        super().__init__(message)


class InvalidTransition(EngineError):
    code = "INVALID_TRANSITION"


class StateConflict(InvalidTransition):
    """The match moved on before this transition could be applied."""
    code = "STATE_CONFLICT"


class MatchLocked(EngineError):
    code = "MATCH_LOCKED"

    def __init__(self, match_id, status):
        self.match_id = match_id
        self.status = status
        super().__init__(f"Predictions are closed for match {match_id} (status: {status})")


class InvalidTeam(EngineError):
    code = "INVALID_TEAM"


class NotFound(EngineError):
    code = "NOT_FOUND"


class Unavailable(EngineError):
    code = "UNAVAILABLE"


def retry_transient(func):
    """Retry ``func`` on transient database errors, then raise Unavailable."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        if connection.in_atomic_block:
            # The outermost caller retries the whole transaction.
            return func(*args, **kwargs)
        attempts = max(1, getattr(settings, 'ENGINE_RETRY_ATTEMPTS', 3))
        backoff_ms = getattr(settings, 'ENGINE_RETRY_BACKOFF_MS', [50, 150, 300])
        for attempt in range(attempts):
            try:
                return func(*args, **kwargs)
            except (OperationalError, InterfaceError) as e:
                if attempt == attempts - 1:
                    logger.error("%s failed after %d attempts: %s", func.__name__, attempts, e)
                    raise Unavailable(f"{func.__name__} is temporarily unavailable") from e
                delay = backoff_ms[min(attempt, len(backoff_ms) - 1)] / 1000 if backoff_ms else 0
                logger.warning("Retry %d/%d of %s after error: %s. Waiting %ss",
                               attempt + 1, attempts, func.__name__, e, delay)
                time.sleep(delay)

    return wrapper
