# Unlock Guard - brute-force protection for the master password
#
# Per-source state machine:
#   Normal --(max_attempts failures)--> LockedOut(until = now + lockout)
#   LockedOut --(lockout elapses)--> Normal (counter reset)
#   any --(successful unlock)--> Normal (counter reset)
#
# Separate from the request-rate limiter in api/rate_limiter.py, which
# throttles every mutating endpoint.

import logging
import math
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Iterator, Optional, Tuple

from ..core.exceptions import LockedOutError

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_LOCKOUT_SECONDS = 15 * 60


@dataclass
class UnlockAttemptState:
    failure_count: int = 0
    lockout_until: Optional[float] = None  # time.monotonic() deadline


class UnlockGuard:
    """Per-source failure counter with a fixed lockout window.

    Sources are opaque strings (normally the client IP). State lives in
    memory only; a restart clears every lockout.
    """

    def __init__(
        self,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        lockout_seconds: float = DEFAULT_LOCKOUT_SECONDS,
    ):
        self.max_attempts = max_attempts
        self.lockout_seconds = lockout_seconds
        self._states: Dict[str, UnlockAttemptState] = {}
        self._source_locks: Dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

    def _expire(self, source: str, now: float) -> Optional[UnlockAttemptState]:
        """Return the live state for source, dropping it once its lockout elapsed."""
        state = self._states.get(source)
        if state and state.lockout_until is not None and now >= state.lockout_until:
            del self._states[source]
            return None
        return state

    def check_allowed(self, source: str) -> Tuple[bool, int]:
        """Check whether source may attempt an unlock.

        Returns:
            (allowed, remaining_seconds): remaining_seconds is the cooldown
            left while locked out, 0 otherwise.
        """
        now = time.monotonic()
        with self._lock:
            state = self._expire(source, now)
            if state is None or state.lockout_until is None:
                return True, 0
            return False, max(1, math.ceil(state.lockout_until - now))

    def ensure_allowed(self, source: str) -> None:
        """Raise LockedOutError if source is currently locked out."""
        allowed, remaining = self.check_allowed(source)
        if not allowed:
            logger.warning("Unlock attempt from %s during lockout (%ss remaining)", source, remaining)
            raise LockedOutError(retry_after=remaining)

    @contextmanager
    def attempt(self, source: str) -> Iterator[None]:
        """Serialize one unlock attempt per source.

        The lockout check and the caller's password check run under a
        per-source lock, so concurrent guesses from one source are counted
        one at a time and the attempt after the last allowed failure is
        refused. Other sources are not blocked.

        Raises:
            LockedOutError: source is in its lockout window
        """
        with self._lock:
            source_lock = self._source_locks.setdefault(source, threading.Lock())
        with source_lock:
            self.ensure_allowed(source)
            yield

    def record_failure(self, source: str) -> int:
        """Count a failed unlock.

        Returns:
            Attempts left before lockout (0 once locked out).
        """
        now = time.monotonic()
        with self._lock:
            state = self._expire(source, now) or self._states.setdefault(source, UnlockAttemptState())
            self._states[source] = state
            state.failure_count += 1
            if state.failure_count >= self.max_attempts:
                state.lockout_until = now + self.lockout_seconds
                logger.warning(
                    "Source %s locked out for %ss after %d failed unlocks",
                    source, self.lockout_seconds, state.failure_count,
                )
                return 0
            return self.max_attempts - state.failure_count

    def record_success(self, source: str) -> None:
        """Reset the counter and clear any lockout immediately."""
        with self._lock:
            self._states.pop(source, None)

    def failure_count(self, source: str) -> int:
        with self._lock:
            state = self._expire(source, time.monotonic())
            return state.failure_count if state else 0

    def reset_all(self) -> None:
        with self._lock:
            self._states.clear()
            self._source_locks.clear()
