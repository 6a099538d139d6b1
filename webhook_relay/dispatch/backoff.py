"""
Exponential backoff policy for failed delivery attempts.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Retry schedule for one work item.

    The retry that follows failed attempt n waits base * 2^(n-1) seconds,
    so base=2 gives 2s, 4s, 8s, 16s, ... The optional cap keeps the
    sequence non-decreasing.
    """

    base_seconds: float
    max_attempts: int
    max_delay_seconds: float | None = None

    def __post_init__(self) -> None:
        if self.base_seconds < 0:
            raise ValueError("base_seconds must be >= 0")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    def delay_for(self, attempts_made: int) -> float:
        """
        Delay before the next attempt.

        Args:
            attempts_made: Failed attempts so far (>= 1).

        Returns:
            Seconds to wait before the next attempt.
        """
        if attempts_made < 1:
            return 0.0
        delay = self.base_seconds * (2 ** (attempts_made - 1))
        if self.max_delay_seconds is not None:
            delay = min(delay, self.max_delay_seconds)
        return delay

    def is_exhausted(self, attempts_made: int) -> bool:
        """True once no further attempt may be scheduled."""
        return attempts_made >= self.max_attempts

    def schedule(self) -> list[float]:
        """Every retry delay the policy can produce, in order."""
        return [self.delay_for(n) for n in range(1, self.max_attempts)]
