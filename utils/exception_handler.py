"""
Exception Handler Module
Provides the bot's exception taxonomy and error handling decorators
"""

import logging
import functools
from typing import Any, Callable

logger = logging.getLogger(__name__)


class BotError(Exception):
    """Base class for every error the bot raises on purpose"""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(BotError):
    """Malformed phone/PIN/amount or an out-of-bounds value - re-prompt in place"""


class InsufficientFundsError(ValidationError):
    """Ledger precondition failed: the selected bucket cannot cover the amount"""


class AuthorizationError(BotError):
    """Wrong PIN, or a non-admin issuing an admin command"""


class NotFoundError(BotError):
    """Unknown deposit/withdrawal id, phone or referral code"""


class ExternalServiceError(BotError):
    """Payment provider unreachable or returned an error"""


class PersistenceError(BotError):
    """Store write failed - the triggering operation did not commit"""


class InvariantViolation(BotError):
    """A ledger invariant was about to break. Programming defect, never user-facing."""


def safe_telegram_handler(func: Callable) -> Callable:
    """
    Decorator to safely handle telegram handler functions
    Catches exceptions and logs them without crashing the bot
    """

    @functools.wraps(func)
    async def wrapper(*args, **kwargs) -> Any:
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            logger.error(f"Error in telegram handler {func.__name__}: {e}")
            logger.error(f"Exception details: {type(e).__name__}: {str(e)}", exc_info=True)
            # Don't re-raise to prevent bot crashes
            return None

    return wrapper
