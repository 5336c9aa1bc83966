"""
Supervised retry policy for speech recognition errors.

The policy is plain data: which error codes are fatal, how many restarts a
transient error may trigger, and how long to wait before each one. The
capture controller asks it what to do; it never touches I/O itself.
"""

from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet


class ErrorSeverity(Enum):
    TRANSIENT = "transient"
    FATAL = "fatal"


FATAL_CAPTURE_ERRORS = frozenset({"not-allowed", "service-not-allowed", "audio-capture"})
TRANSIENT_CAPTURE_ERRORS = frozenset({"no-speech", "aborted", "network"})


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff with a transient/fatal split."""
    max_attempts: int = 3
    initial_delay: float = 1.0
    backoff: float = 2.0
    max_delay: float = 8.0
    fatal_codes: FrozenSet[str] = FATAL_CAPTURE_ERRORS

    def classify(self, code: str) -> ErrorSeverity:
        # Unknown codes are retried; the attempt budget still bounds them
        if code in self.fatal_codes:
            return ErrorSeverity.FATAL
        return ErrorSeverity.TRANSIENT

    def is_fatal(self, code: str) -> bool:
        return self.classify(code) is ErrorSeverity.FATAL

    def should_retry(self, code: str, attempt: int) -> bool:
        """Whether retry number `attempt` (1-based) is allowed for this error."""
        if self.is_fatal(code):
            return False
        return attempt <= self.max_attempts

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait before retry number `attempt` (1-based)."""
        if attempt < 1:
            return 0.0
        delay = self.initial_delay * (self.backoff ** (attempt - 1))
        return min(delay, self.max_delay)

    @classmethod
    def from_config(cls, cfg) -> "RetryPolicy":
        return cls(
            max_attempts=cfg.max_retries,
            initial_delay=cfg.retry_initial_delay,
            backoff=cfg.retry_backoff,
            max_delay=cfg.retry_max_delay,
        )
