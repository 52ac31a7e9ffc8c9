"""
Per-identity failure tracking with progressive lockout.

The ledger keeps, per identity, the timestamps of failed verification
attempts inside a rolling window. Two thresholds apply:

- soft: more than ``soft_threshold`` failures, all within
  ``soft_window_seconds`` of the first failure in the window, impose a
  cooldown until that first failure is ``soft_window_seconds`` old;
- hard: ``hard_threshold`` failures inside the rolling
  ``hard_window_seconds`` block the identity until enough of them age out.

Any success clears the identity's ledger.
"""

import threading
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

import structlog

from . import config
from .exceptions import RateLimited, ValidationError
from .utils import Clock, log_security_event, system_clock

# Initialize structured logger
logger = structlog.get_logger(__name__)


class AttemptLedger(ABC):
    """
    Keyed store of failure timestamps.

    Implementations must make ``record`` a single atomic prune-and-append
    per key.
    """

    @abstractmethod
    def record(self, key: str, now: float, window_seconds: float) -> List[float]:
        """Drop entries older than the window, append ``now``, return the entries."""

    @abstractmethod
    def entries(self, key: str, now: float, window_seconds: float) -> List[float]:
        """Entries for ``key`` inside the window, oldest first."""

    @abstractmethod
    def clear(self, key: str) -> None:
        """Forget every entry for ``key``."""

    @abstractmethod
    def prune(self, now: float, window_seconds: float) -> int:
        """Drop entries older than the window everywhere; return the keys removed."""


class InMemoryAttemptLedger(AttemptLedger):
    """Thread-safe in-process ledger."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: Dict[str, List[float]] = {}

    @staticmethod
    def _prune(timestamps: List[float], now: float, window_seconds: float) -> List[float]:
        cutoff = now - window_seconds
        return [t for t in timestamps if t > cutoff]

    def record(self, key, now, window_seconds):
        with self._lock:
            kept = self._prune(self._entries.get(key, []), now, window_seconds)
            kept.append(now)
            self._entries[key] = kept
            return list(kept)

    def entries(self, key, now, window_seconds):
        with self._lock:
            timestamps = self._entries.get(key)
            if timestamps is None:
                return []
            kept = self._prune(timestamps, now, window_seconds)
            if kept:
                self._entries[key] = kept
            else:
                del self._entries[key]
            return list(kept)

    def clear(self, key):
        with self._lock:
            self._entries.pop(key, None)

    def prune(self, now, window_seconds):
        with self._lock:
            removed = 0
            for key in list(self._entries):
                kept = self._prune(self._entries[key], now, window_seconds)
                if kept:
                    self._entries[key] = kept
                else:
                    del self._entries[key]
                    removed += 1
            return removed

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class RateLimiter:
    """
    Sliding-window failure limiter keyed by identity.

    Parameters
    ----------
    ledger : AttemptLedger, optional
        Backing store. Defaults to an ``InMemoryAttemptLedger``.
    soft_threshold : int, optional
        Failures tolerated before the soft cooldown applies.
    soft_window_seconds : float, optional
        Cooldown span measured from the first failure in the window.
    hard_threshold : int, optional
        Failures inside the rolling window that trigger a hard block.
    hard_window_seconds : float, optional
        Rolling window length.
    clock : Callable[[], float], default=system_clock
        Source of epoch seconds.

    Examples
    --------
    >>> limiter = RateLimiter(clock=lambda: 0.0)
    >>> limiter.is_limited("alice")
    False
    """

    def __init__(
        self,
        ledger: Optional[AttemptLedger] = None,
        soft_threshold: Optional[int] = None,
        soft_window_seconds: Optional[float] = None,
        hard_threshold: Optional[int] = None,
        hard_window_seconds: Optional[float] = None,
        clock: Clock = system_clock,
    ) -> None:
        self.ledger = ledger if ledger is not None else InMemoryAttemptLedger()
        self.soft_threshold = (
            config.RATE_SOFT_THRESHOLD if soft_threshold is None else soft_threshold
        )
        self.soft_window_seconds = float(
            config.RATE_SOFT_WINDOW_SECONDS if soft_window_seconds is None else soft_window_seconds
        )
        self.hard_threshold = (
            config.RATE_HARD_THRESHOLD if hard_threshold is None else hard_threshold
        )
        self.hard_window_seconds = float(
            config.RATE_HARD_WINDOW_SECONDS if hard_window_seconds is None else hard_window_seconds
        )
        self._clock = clock

        if not 0 < self.soft_threshold < self.hard_threshold:
            raise ValidationError(
                "Rate limit thresholds must satisfy 0 < soft < hard", field="soft_threshold"
            )
        if not 0 < self.soft_window_seconds <= self.hard_window_seconds:
            raise ValidationError(
                "Rate limit windows must satisfy 0 < soft <= hard", field="soft_window_seconds"
            )

    def _retry_after(self, timestamps: List[float], now: float) -> float:
        count = len(timestamps)
        wait = 0.0

        if count >= self.hard_threshold:
            # The block lifts once the oldest failure that keeps the count
            # at the threshold leaves the window.
            pivot = timestamps[count - self.hard_threshold]
            wait = max(wait, pivot + self.hard_window_seconds - now)

        if count > self.soft_threshold:
            cooldown_end = timestamps[0] + self.soft_window_seconds
            if now < cooldown_end:
                wait = max(wait, cooldown_end - now)

        return max(0.0, wait)

    def retry_after(self, identity_ref: str) -> float:
        """Seconds until ``identity_ref`` may try again (0.0 when not limited)."""
        now = self._clock()
        timestamps = self.ledger.entries(identity_ref, now, self.hard_window_seconds)
        return self._retry_after(timestamps, now)

    def is_limited(self, identity_ref: str) -> bool:
        return self.retry_after(identity_ref) > 0.0

    def check(self, identity_ref: str) -> None:
        """
        Raise if the identity is currently limited.

        Raises
        ------
        RateLimited
            With the number of seconds to wait.
        """
        wait = self.retry_after(identity_ref)
        if wait > 0.0:
            log_security_event(
                "rate_limited", identity_ref, retry_after_seconds=round(wait, 3)
            )
            raise RateLimited(identity_ref, wait)

    def record_failure(self, identity_ref: str) -> int:
        """
        Record one failed attempt.

        Returns
        -------
        int
            Failures currently inside the rolling window.
        """
        timestamps = self.ledger.record(identity_ref, self._clock(), self.hard_window_seconds)

        logger.info(
            "Verification failure recorded",
            identity_ref=identity_ref,
            failures_in_window=len(timestamps),
        )
        return len(timestamps)

    def failure_count(self, identity_ref: str) -> int:
        return len(self.ledger.entries(identity_ref, self._clock(), self.hard_window_seconds))

    def clear(self, identity_ref: str) -> None:
        self.ledger.clear(identity_ref)
        logger.debug("Failure ledger cleared", identity_ref=identity_ref)

    def prune(self) -> int:
        """
        Forget identities whose failures have all left the rolling window.

        Returns
        -------
        int
            Number of identities dropped from the ledger.
        """
        removed = self.ledger.prune(self._clock(), self.hard_window_seconds)
        if removed:
            logger.debug("Failure ledger pruned", identities_removed=removed)
        return removed
