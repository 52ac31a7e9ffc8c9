"""Tests for pending capture sessions and the background sweeper."""

import threading
import time

import pytest

from humanitas_id.data_models import SessionState
from humanitas_id.exceptions import ExpiredOrUnknownSession, ValidationError
from humanitas_id.fingerprint_index import FingerprintIndex
from humanitas_id.session_cache import InMemorySessionCache, SessionSweeper

from helpers import ManualClock, base_features


@pytest.fixture
def capture():
    features = base_features()
    return features, FingerprintIndex().derive(features)


def _put(cache, capture, identity_ref="a" * 64):
    features, fingerprint = capture
    return cache.put(identity_ref, "facial", features, fingerprint, 0.85)


class TestTake:
    def test_take_returns_pending_session(self, clock, capture):
        cache = InMemorySessionCache(clock=clock)
        token = _put(cache, capture)

        session = cache.take(token)

        assert session.identity_ref == "a" * 64
        assert session.modality == "facial"
        assert session.state is SessionState.PENDING
        assert session.expires_at == clock() + 600

    def test_take_is_single_use(self, clock, capture):
        cache = InMemorySessionCache(clock=clock)
        token = _put(cache, capture)
        cache.take(token)

        with pytest.raises(ExpiredOrUnknownSession):
            cache.take(token)
        assert len(cache) == 0

    def test_unknown_token(self, clock):
        cache = InMemorySessionCache(clock=clock)
        with pytest.raises(ExpiredOrUnknownSession):
            cache.take("never-issued")
        with pytest.raises(ExpiredOrUnknownSession):
            cache.take("")

    def test_expired_session_is_rejected_even_before_sweep(self, clock, capture):
        cache = InMemorySessionCache(clock=clock)
        token = _put(cache, capture)

        clock.advance(600)

        with pytest.raises(ExpiredOrUnknownSession):
            cache.take(token)

    def test_tokens_are_long_and_distinct(self, clock, capture):
        cache = InMemorySessionCache(clock=clock)
        tokens = {_put(cache, capture) for _ in range(50)}

        assert len(tokens) == 50
        # 32 random bytes, url-safe base64
        assert all(len(t) >= 43 for t in tokens)

    def test_concurrent_take_has_one_winner(self, capture):
        cache = InMemorySessionCache(clock=ManualClock())
        token = _put(cache, capture)
        barrier = threading.Barrier(8)
        winners = []
        losers = []

        def worker():
            barrier.wait()
            try:
                winners.append(cache.take(token))
            except ExpiredOrUnknownSession:
                losers.append(True)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(winners) == 1
        assert len(losers) == 7

    def test_ttl_must_be_positive(self, clock):
        with pytest.raises(ValidationError):
            InMemorySessionCache(ttl_seconds=0, clock=clock)


class TestSweep:
    def test_sweep_evicts_only_expired(self, clock, capture):
        cache = InMemorySessionCache(ttl_seconds=60, clock=clock)
        _put(cache, capture)
        _put(cache, capture)
        clock.advance(30)
        fresh = _put(cache, capture)

        clock.advance(31)

        assert cache.sweep() == 2
        assert len(cache) == 1
        assert cache.take(fresh).state is SessionState.PENDING

    def test_sweeper_thread_evicts_without_reads(self, capture):
        clock = ManualClock()
        cache = InMemorySessionCache(ttl_seconds=10, clock=clock)
        _put(cache, capture)
        sweeper = SessionSweeper(cache, interval_seconds=0.01)
        sweeper.start()
        try:
            clock.advance(11)
            deadline = time.monotonic() + 2.0
            while len(cache) and time.monotonic() < deadline:
                time.sleep(0.01)
        finally:
            sweeper.stop()

        assert len(cache) == 0
        assert not sweeper.running

    def test_housekeeping_tasks_run_after_each_sweep(self, clock, capture):
        cache = InMemorySessionCache(ttl_seconds=10, clock=clock)
        _put(cache, capture)
        calls = []

        def failing_task():
            calls.append("failing")
            raise RuntimeError("store unavailable")

        sweeper = SessionSweeper(
            cache, interval_seconds=60, tasks=(failing_task, lambda: calls.append("prune"))
        )
        clock.advance(11)

        sweeper.run_once()

        assert len(cache) == 0
        assert calls == ["failing", "prune"]
