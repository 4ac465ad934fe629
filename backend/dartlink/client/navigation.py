import logging
import threading

logger = logging.getLogger(__name__)


class NavigationGuard:
    """Process-wide latch: at most one navigation into gameplay per match."""

    def __init__(self):
        self._lock = threading.Lock()
        self._navigated = set()

    def try_navigate(self, match_id) -> bool:
        """Atomic check-and-set. Returns False if the match was already entered."""
        with self._lock:
            if match_id in self._navigated:
                logger.info("navigation to %s already taken", match_id)
                return False
            self._navigated.add(match_id)
        logger.info("navigation to %s allowed", match_id)
        return True

    def has_navigated(self, match_id) -> bool:
        with self._lock:
            return match_id in self._navigated

    def clear(self, match_id) -> None:
        with self._lock:
            self._navigated.discard(match_id)

    def reset(self) -> None:
        with self._lock:
            self._navigated.clear()


navigation_guard = NavigationGuard()


class ScreenGuard:
    """Per-screen-instance flag, checked before the process-wide guard."""

    def __init__(self):
        self._lock = threading.Lock()
        self._fired = False

    def try_fire(self) -> bool:
        with self._lock:
            if self._fired:
                return False
            self._fired = True
            return True

    @property
    def fired(self) -> bool:
        return self._fired


class StatusDeduplicator:
    """Drops inbound events whose status equals the last one observed for that match."""

    def __init__(self):
        self._lock = threading.Lock()
        self._last = {}

    def is_new(self, match_id, status) -> bool:
        with self._lock:
            if self._last.get(match_id) == status:
                return False
            self._last[match_id] = status
            return True

    def forget(self, match_id) -> None:
        with self._lock:
            self._last.pop(match_id, None)
