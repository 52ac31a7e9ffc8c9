"""
HUMANITAS ID test configuration.
Shared fixtures: identities and signing, a manual clock, stores and a fully
wired service.
"""

import os
import tempfile
from pathlib import Path

# Cheap Argon2 parameters and an isolated database, set before the package
# reads its configuration.
_TEMP_DIR = tempfile.mkdtemp(prefix="humanitas_id_test_")
os.environ["ARGON2_TIME_COST"] = "1"
os.environ["ARGON2_MEMORY_COST"] = "1024"
os.environ["HUMANITAS_ID_DB_PATH"] = str(Path(_TEMP_DIR) / "default.sqlite3")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("STRUCTURED_LOGGING", "false")

import pytest  # noqa: E402

from humanitas_id.credential_store import SQLiteCredentialStore  # noqa: E402
from humanitas_id.extractors import ExtractorRegistry, FeatureMapExtractor  # noqa: E402
from humanitas_id.integrations import RecordingEventSink  # noqa: E402
from humanitas_id.rate_limiter import RateLimiter  # noqa: E402
from humanitas_id.service import IdentityBindingService  # noqa: E402
from humanitas_id.session_cache import InMemorySessionCache  # noqa: E402
from humanitas_id.utils import configure_logging  # noqa: E402
from humanitas_id.verification_engine import VerificationEngine  # noqa: E402

from helpers import Identity, ManualClock, ProtocolClient  # noqa: E402

configure_logging()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def identity():
    return Identity()


@pytest.fixture
def other_identity():
    return Identity()


@pytest.fixture
def sqlite_store(tmp_path):
    return SQLiteCredentialStore(tmp_path / "credentials.sqlite3")


@pytest.fixture
def registry():
    registry = ExtractorRegistry()
    registry.register(FeatureMapExtractor("facial"))
    registry.register(FeatureMapExtractor("voice"))
    return registry


@pytest.fixture
def events():
    return RecordingEventSink()


@pytest.fixture
def rate_limiter(clock):
    return RateLimiter(clock=clock)


@pytest.fixture
def engine(sqlite_store, rate_limiter, clock):
    return VerificationEngine(sqlite_store, rate_limiter, clock=clock)


@pytest.fixture
def service(sqlite_store, registry, rate_limiter, engine, events, clock):
    service = IdentityBindingService(
        store=sqlite_store,
        registry=registry,
        session_cache=InMemorySessionCache(clock=clock),
        rate_limiter=rate_limiter,
        engine=engine,
        event_sink=events,
        clock=clock,
    )
    yield service
    service.close()


@pytest.fixture
def client(service, identity):
    return ProtocolClient(service, identity)


@pytest.fixture
def make_client(service):
    def _make(identity=None):
        return ProtocolClient(service, identity or Identity())

    return _make
