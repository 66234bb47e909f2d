"""Retry / dead-letter policy for inbound messages.

Two pieces:

* :class:`ErrorPolicy` classifies a handler failure into a
  :class:`Disposition` (ack, retry, or dead-letter).  Every subscription
  carries one, so no failure is ever left unclassified.
* :class:`MessageLifecycle` enforces the per-message state machine::

      RECEIVED -> PROCESSING -> ACKNOWLEDGED
                             -> REDELIVERY_PENDING -> PROCESSING ...
                             -> DEAD_LETTERED
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field

from pydantic import ValidationError

from emis.core.enums import Disposition, MessageState
from emis.core.errors import (
    BusinessRuleViolation,
    DeserializationError,
    InvalidTransitionError,
    PermanentHandlerError,
    RetryableHandlerError,
    TransportError,
)

logger = logging.getLogger(__name__)

DEFAULT_NON_RETRYABLE: tuple[type[BaseException], ...] = (
    PermanentHandlerError,
    BusinessRuleViolation,
    DeserializationError,
    ValidationError,
)

DEFAULT_RETRYABLE: tuple[type[BaseException], ...] = (
    RetryableHandlerError,
    TransportError,
    asyncio.TimeoutError,
    ConnectionError,
)


def backoff_delay(attempt: int, base: float, maximum: float) -> float:
    """Exponential backoff with jitter, capped at *maximum* seconds."""
    delay = base * (2 ** max(attempt - 1, 0))
    delay = delay + random.uniform(0, delay * 0.5)
    return min(delay, maximum)


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ErrorPolicy:
    """How one handler's failures map to message dispositions.

    Resolution order: ``ack_on`` (nothing left to do), then
    ``non_retryable``, then ``retryable``.  Anything else is treated as
    retryable.  Retries stop at ``max_attempts``, after which the message
    is dead-lettered.
    """

    max_attempts: int = 5
    retryable: tuple[type[BaseException], ...] = DEFAULT_RETRYABLE
    non_retryable: tuple[type[BaseException], ...] = DEFAULT_NON_RETRYABLE
    ack_on: tuple[type[BaseException], ...] = ()

    def classify(self, exc: BaseException, attempt: int) -> Disposition:
        if self.ack_on and isinstance(exc, self.ack_on):
            return Disposition.ACK
        if isinstance(exc, self.non_retryable):
            return Disposition.DEAD_LETTER
        if not isinstance(exc, self.retryable):
            logger.warning(
                "Unclassified %s treated as retryable (attempt %d/%d)",
                type(exc).__name__,
                attempt,
                self.max_attempts,
            )
        if attempt >= self.max_attempts:
            return Disposition.DEAD_LETTER
        return Disposition.RETRY

    def exhausted(self, attempt: int) -> bool:
        return attempt >= self.max_attempts


DEFAULT_POLICY = ErrorPolicy()


# ---------------------------------------------------------------------------
# Message state machine
# ---------------------------------------------------------------------------

_VALID_TRANSITIONS: dict[MessageState, frozenset[MessageState]] = {
    MessageState.RECEIVED: frozenset({MessageState.PROCESSING}),
    MessageState.PROCESSING: frozenset(
        {
            MessageState.ACKNOWLEDGED,
            MessageState.REDELIVERY_PENDING,
            MessageState.DEAD_LETTERED,
        }
    ),
    MessageState.REDELIVERY_PENDING: frozenset({MessageState.PROCESSING}),
    # Terminal states -- no further transitions allowed.
    MessageState.ACKNOWLEDGED: frozenset(),
    MessageState.DEAD_LETTERED: frozenset(),
}

TERMINAL_STATES = frozenset({MessageState.ACKNOWLEDGED, MessageState.DEAD_LETTERED})

_DISPOSITION_STATE: dict[Disposition, MessageState] = {
    Disposition.ACK: MessageState.ACKNOWLEDGED,
    Disposition.RETRY: MessageState.REDELIVERY_PENDING,
    Disposition.DEAD_LETTER: MessageState.DEAD_LETTERED,
}


def state_for(disposition: Disposition) -> MessageState:
    return _DISPOSITION_STATE[disposition]


@dataclass
class MessageLifecycle:
    """Tracks one message through the consumer state machine."""

    message_key: str
    state: MessageState = MessageState.RECEIVED
    attempts: int = 0
    history: list[MessageState] = field(default_factory=lambda: [MessageState.RECEIVED])

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition(self, new_state: MessageState) -> None:
        allowed = _VALID_TRANSITIONS.get(self.state, frozenset())
        if new_state not in allowed:
            msg = (
                f"Invalid message transition: {self.state.value} -> "
                f"{new_state.value} for {self.message_key}"
            )
            logger.error(msg)
            raise InvalidTransitionError(msg)
        if new_state == MessageState.PROCESSING:
            self.attempts += 1
        self.state = new_state
        self.history.append(new_state)
