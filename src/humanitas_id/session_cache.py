"""
Pending capture sessions for the HUMANITAS ID system.

A session holds one extracted capture between ``begin_capture`` and
``complete_capture``. Sessions are addressed by an opaque bearer token,
are consumed by the first ``take`` and expire after a fixed TTL whether or
not anybody reads them.

``SessionCache`` is the port; ``InMemorySessionCache`` serves a single
process. Deployments with several instances plug in a cache backed by an
external TTL-capable key-value store implementing the same interface.
"""

import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Mapping, Optional, Sequence

import structlog

from . import config
from .data_models import CaptureSession, Fingerprint, SessionState
from .exceptions import ExpiredOrUnknownSession, ValidationError
from .utils import Clock, generate_session_token, system_clock

# Initialize structured logger
logger = structlog.get_logger(__name__)


class SessionCache(ABC):
    """Store of single-use pending capture sessions."""

    @abstractmethod
    def put(
        self,
        identity_ref: str,
        modality: str,
        features: Mapping[str, float],
        fingerprint: Fingerprint,
        quality_score: float,
    ) -> str:
        """Store a capture and return its token."""

    @abstractmethod
    def take(self, token: str) -> CaptureSession:
        """
        Atomically remove and return the session for ``token``.

        Raises
        ------
        ExpiredOrUnknownSession
            If the token was already taken, expired or never issued.
        """

    @abstractmethod
    def sweep(self) -> int:
        """Evict expired sessions and return how many were removed."""

    @abstractmethod
    def __len__(self) -> int:
        """Number of sessions currently held."""


class InMemorySessionCache(SessionCache):
    """
    Thread-safe in-process session cache.

    ``take`` pops the entry under the cache lock, so of two concurrent
    callers holding the same token exactly one receives the session.

    Parameters
    ----------
    ttl_seconds : float, optional
        Session lifetime. Defaults to ``config.SESSION_TTL_SECONDS``.
    clock : Callable[[], float], default=system_clock
        Source of epoch seconds.
    token_factory : Callable[[], str], default=generate_session_token
        Generator of unguessable tokens.
    """

    def __init__(
        self,
        ttl_seconds: Optional[float] = None,
        clock: Clock = system_clock,
        token_factory: Callable[[], str] = generate_session_token,
    ) -> None:
        self.ttl_seconds = float(
            config.SESSION_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        )
        if self.ttl_seconds <= 0:
            raise ValidationError("Session TTL must be positive", field="ttl_seconds")

        self._clock = clock
        self._token_factory = token_factory
        self._lock = threading.Lock()
        self._sessions: Dict[str, CaptureSession] = {}

    def put(self, identity_ref, modality, features, fingerprint, quality_score) -> str:
        now = self._clock()

        with self._lock:
            token = self._token_factory()
            while token in self._sessions:
                token = self._token_factory()

            session = CaptureSession(
                token=token,
                identity_ref=identity_ref,
                modality=modality,
                features=dict(features),
                fingerprint=fingerprint,
                quality_score=quality_score,
                created_at=now,
                expires_at=now + self.ttl_seconds,
                state=SessionState.IDLE,
            )
            session.transition(SessionState.PENDING)
            self._sessions[token] = session

        logger.debug(
            "Capture session stored",
            identity_ref=identity_ref,
            modality=modality,
            ttl_seconds=self.ttl_seconds,
        )
        return token

    def take(self, token: str) -> CaptureSession:
        if not isinstance(token, str) or not token:
            raise ExpiredOrUnknownSession()

        with self._lock:
            session = self._sessions.pop(token, None)

        if session is None:
            raise ExpiredOrUnknownSession()

        if session.is_expired(self._clock()):
            session.transition(SessionState.EXPIRED)
            logger.info(
                "Expired capture session presented",
                identity_ref=session.identity_ref,
                modality=session.modality,
            )
            raise ExpiredOrUnknownSession()

        return session

    def sweep(self) -> int:
        now = self._clock()

        with self._lock:
            expired = [t for t, s in self._sessions.items() if s.is_expired(now)]
            evicted = [self._sessions.pop(t) for t in expired]

        for session in evicted:
            session.transition(SessionState.EXPIRED)

        if evicted:
            logger.info("Expired capture sessions evicted", count=len(evicted))
        return len(evicted)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


class SessionSweeper:
    """
    Background thread that periodically calls ``SessionCache.sweep``.

    Eviction runs off the request path, so live requests never pay for it.
    Extra housekeeping callables run on the same tick after the sweep.

    Parameters
    ----------
    cache : SessionCache
        Cache to sweep.
    interval_seconds : float, optional
        Delay between sweeps. Defaults to
        ``config.SESSION_SWEEP_INTERVAL_SECONDS``.
    tasks : Sequence[Callable[[], Any]], optional
        Housekeeping run after each sweep, such as pruning failure records.
    """

    def __init__(
        self,
        cache: SessionCache,
        interval_seconds: Optional[float] = None,
        tasks: Sequence[Callable[[], Any]] = (),
    ) -> None:
        self.cache = cache
        self.tasks = tuple(tasks)
        self.interval_seconds = float(
            config.SESSION_SWEEP_INTERVAL_SECONDS
            if interval_seconds is None
            else interval_seconds
        )
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name="humanitas-id-session-sweeper", daemon=True
        )
        self._thread.start()
        logger.info("Session sweeper started", interval_seconds=self.interval_seconds)

    def run_once(self) -> None:
        """Run one sweep and every housekeeping task."""
        for task in (self.cache.sweep,) + self.tasks:
            try:
                task()
            except Exception as e:
                # Keep sweeping; a failed pass is retried on the next tick.
                logger.error(
                    "Housekeeping task failed",
                    task=getattr(task, "__qualname__", repr(task)),
                    error=str(e),
                    error_type=type(e).__name__,
                )

    def _run(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            self.run_once()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
            logger.info("Session sweeper stopped")
