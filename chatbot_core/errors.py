"""
Error Taxonomy

Exceptions raised by the bot core. Locally recoverable conditions (duplicate
inserts, unknown commands) never use these; they come back as normal results.

- ValidationError: bad input, raised before any side effect
- ProviderError: embedding or generative backend failure (no retry)
- RateLimitExceeded: the bot's token bucket cannot cover the request
- PersistenceError: storage unreachable or unexpected constraint violation
- ProcessingFailed: the single opaque failure reported for a chat turn
"""

from typing import Optional


class ChatbotError(Exception):
    """Base class for all bot core errors."""


class ValidationError(ChatbotError, ValueError):
    """Input rejected before any storage or provider call."""


class ProviderError(ChatbotError):
    """An embedding or generative-model backend call failed."""

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.provider = provider


class RateLimitExceeded(ChatbotError):
    """
    The bot's token bucket does not hold enough tokens.

    Attributes:
        bot_id: Bucket owner
        requested: Tokens asked for
        available: Tokens in the bucket at the time of the request
        retry_after: Seconds until the request could succeed (None if never)
    """

    def __init__(
        self,
        bot_id: str,
        requested: float,
        available: float,
        retry_after: Optional[float] = None,
    ):
        super().__init__(
            f"Rate limit exceeded for bot {bot_id}: requested {requested:g} tokens, "
            f"{available:.0f} available. Please try again later."
        )
        self.bot_id = bot_id
        self.requested = requested
        self.available = available
        self.retry_after = retry_after


class PersistenceError(ChatbotError):
    """The relational store failed or rejected a write unexpectedly."""


class ProcessingFailed(ChatbotError):
    """A chat turn failed; the cause is chained, no partial answer exists."""

    def __init__(self, message: str = "Processing failed"):
        super().__init__(message)
