"""
Channel clients — outbound delivery of rendered messages.

Provides:
- ChannelError: delivery failure, flagged retryable or not
- CircuitBreaker: failure-counting breaker with half-open probe
- ChannelClient: abstract base wrapping every send with the breaker
"""
from __future__ import annotations

import abc
import time
import structlog
from typing import Any

from models.schemas import OutgoingMessage, StateKind

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for all channel operations."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


class CircuitOpenError(ChannelError):
    def __init__(self, channel: str = ""):
        super().__init__(f"Circuit breaker open for {channel}", channel, retryable=True)


# ══════════════════════════════════════════════════════════════
#  CIRCUIT BREAKER
# ══════════════════════════════════════════════════════════════

class CircuitBreaker:
    """
    closed → open (after threshold consecutive failures) → half_open (after
    the recovery timeout) → closed on the next success, open again on failure.
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._state = "closed"
        self._failure_count = 0
        self._opened_at: float = 0.0

    @property
    def state(self) -> str:
        if self._state == "open" and time.monotonic() - self._opened_at >= self.recovery_timeout:
            return "half_open"
        return self._state

    @property
    def is_open(self) -> bool:
        return self.state == "open"

    def record_failure(self):
        self._failure_count += 1
        if self.state == "half_open" or self._failure_count >= self.failure_threshold:
            self._state = "open"
            self._opened_at = time.monotonic()
            logger.warning("circuit_opened", failures=self._failure_count)

    def record_success(self):
        self._state = "closed"
        self._failure_count = 0

    @property
    def stats(self) -> dict[str, Any]:
        return {"state": self.state, "failure_count": self._failure_count}


# ══════════════════════════════════════════════════════════════
#  CHANNEL CLIENT — Abstract Base
# ══════════════════════════════════════════════════════════════

class ChannelClient(abc.ABC):
    """
    Base class for outbound channel clients.

    Subclasses implement _do_send. The base class refuses to send while the
    breaker is open and records every outcome on it. Failures surface as
    ChannelError for the caller to log and answer.
    """

    channel_name: str = ""

    def __init__(self, breaker: CircuitBreaker = None):
        self._breaker = breaker or CircuitBreaker()

    @abc.abstractmethod
    async def _do_send(self, recipient: str, message: OutgoingMessage) -> dict[str, Any]:
        ...

    async def send(self, recipient: str, message: OutgoingMessage) -> dict[str, Any]:
        if self._breaker.is_open:
            raise CircuitOpenError(self.channel_name)
        try:
            result = await self._do_send(recipient, message)
        except ChannelError:
            self._breaker.record_failure()
            raise
        self._breaker.record_success()
        return result

    async def send_text(self, recipient: str, body: str) -> dict[str, Any]:
        return await self.send(recipient, OutgoingMessage(kind=StateKind.TEXT, body=body))

    async def health_check(self) -> dict[str, Any]:
        return {"channel": self.channel_name, "circuit_breaker": self._breaker.stats}

    async def shutdown(self) -> None:
        pass
