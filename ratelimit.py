import threading
import time
from typing import Callable, Dict, List

MAX_REQUESTS_PER_MINUTE = 60


class RateLimiter:
    """Per-IP request counter bucketed by wall-clock minute"""

    def __init__(
        self,
        max_requests_per_minute: int = MAX_REQUESTS_PER_MINUTE,
        clock: Callable[[], float] = time.time,
    ):
        self.max_requests_per_minute = max_requests_per_minute
        self._clock = clock
        self._requests: Dict[str, List[int]] = {}
        self._lock = threading.Lock()
        self._last_prune = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._requests)

    def _prune(self, minute: int) -> None:
        """Forget clients with nothing in the current or previous minute"""
        idle = [ip for ip, minutes in self._requests.items() if not minutes or minutes[-1] < minute - 1]
        for ip in idle:
            del self._requests[ip]
        self._last_prune = minute

    def allow(self, ip: str) -> bool:
        """Count a request from ``ip``; False once the minute's quota is used"""
        minute = int(self._clock()) // 60

        with self._lock:
            if self._last_prune != minute:
                self._prune(minute)

            # Keep the current and previous minute only
            recent = [m for m in self._requests.get(ip, []) if m >= minute - 1]
            if sum(1 for m in recent if m == minute) >= self.max_requests_per_minute:
                self._requests[ip] = recent
                return False
            recent.append(minute)
            self._requests[ip] = recent
            return True

    def reset(self) -> None:
        with self._lock:
            self._requests.clear()
