from __future__ import annotations

import threading
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Dict, List, Tuple


class RateLimiter:
    """
    In-memory sliding-window limiter for email sign-in attempts.

    Counts attempts per identifier (normalized email) and refuses further attempts
    once max_attempts are reached within window_seconds.
    """

    def __init__(self, max_attempts: int = 5, window_seconds: int = 300):
        self._attempts: Dict[str, List[datetime]] = defaultdict(list)
        self._max_attempts = max_attempts
        self._window = timedelta(seconds=window_seconds)
        self._lock = threading.Lock()

    def check_and_increment(self, identifier: str) -> Tuple[bool, int]:
        """
        Check if identifier is rate limited and record this attempt.

        Returns:
            (is_allowed, attempts_remaining)
        """
        now = datetime.now()
        with self._lock:
            recent = [t for t in self._attempts[identifier] if now - t < self._window]
            if len(recent) >= self._max_attempts:
                self._attempts[identifier] = recent
                return False, 0

            recent.append(now)
            self._attempts[identifier] = recent
            return True, self._max_attempts - len(recent)

    def reset(self, identifier: str) -> None:
        """Forget attempts for an identifier (after a successful sign-in)."""
        with self._lock:
            self._attempts.pop(identifier, None)
