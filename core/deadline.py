import time

from core.errors import DeadlineExceeded


class Deadline:
    """A single top-level request deadline propagated to every sub-call.

    `Deadline.none()` never expires (CLI and background use).
    """

    def __init__(self, seconds=None, clock=time.monotonic):
        self._clock = clock
        self._expires_at = None if seconds is None else clock() + seconds

    @classmethod
    def none(cls):
        return cls(None)

    def remaining(self):
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())

    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def check(self, operation: str, tx_hash=None):
        if self.expired():
            raise DeadlineExceeded(operation, tx_hash=tx_hash)

    def bound(self, timeout):
        """Clamp a per-call timeout to what is left of the deadline."""
        remaining = self.remaining()
        if remaining is None:
            return timeout
        if timeout is None:
            return remaining
        return min(timeout, remaining)
