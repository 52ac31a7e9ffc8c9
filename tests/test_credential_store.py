"""Tests for both credential store backends."""

import threading

import pytest

from humanitas_id.credential_store import InMemoryCredentialStore, SQLiteCredentialStore
from humanitas_id.data_models import DeactivationReason, Fingerprint
from humanitas_id.exceptions import (
    AlreadyRegistered,
    DuplicatePattern,
    NotRegistered,
    StorageError,
)

from helpers import START_TIME

ALICE = "a" * 64
BOB = "b" * 64


def make_fingerprint(bit=0):
    return Fingerprint(bits=(bit, 1 - bit) * 4, feature_count=8, layout="0123456789abcdef")


def register(
    store, identity_ref=ALICE, modality="facial", now=START_TIME, bit=0, duplicate_of=None
):
    return store.register(
        identity_ref,
        modality,
        "d" * 64,
        "s" * 32,
        make_fingerprint(bit),
        0.85,
        now,
        duplicate_of=duplicate_of,
    )


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        backend = InMemoryCredentialStore()
    else:
        backend = SQLiteCredentialStore(tmp_path / "credentials.sqlite3")
    yield backend
    backend.close()


class TestRegistration:
    def test_register_and_find(self, store):
        credential_id = register(store)

        credential = store.find(ALICE, "facial")

        assert credential.id == credential_id
        assert credential.active
        assert credential.fingerprint == make_fingerprint()
        assert credential.verification_count == 0
        assert credential.created_at.timestamp() == START_TIME

    def test_one_active_credential_per_modality(self, store):
        register(store)

        with pytest.raises(AlreadyRegistered) as excinfo:
            register(store)
        assert excinfo.value.error_code == "STATE_001"

    def test_modalities_and_identities_are_independent(self, store):
        register(store)
        register(store, modality="voice")
        register(store, identity_ref=BOB)

        assert store.active_modalities(ALICE) == ["facial", "voice"]
        assert store.active_modalities(BOB) == ["facial"]
        assert len(store.list_active("facial")) == 2
        assert len(store.list_active()) == 3

    def test_find_missing(self, store):
        assert store.find(ALICE, "facial") is None
        assert store.get("nope") is None

    def test_reregister_after_deactivation(self, store):
        first = register(store)
        assert store.deactivate(first, DeactivationReason.USER_REQUESTED, START_TIME + 10)

        second = register(store, now=START_TIME + 20)

        assert second != first
        assert store.find(ALICE, "facial").id == second

    def test_concurrent_registration_has_one_winner(self, store):
        barrier = threading.Barrier(6)
        successes = []
        conflicts = []

        def worker():
            barrier.wait()
            try:
                successes.append(register(store))
            except AlreadyRegistered:
                conflicts.append(True)

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(successes) == 1
        assert len(conflicts) == 5
        assert len(store.list_credentials(ALICE)) == 1


def same_as_first(fingerprint):
    return fingerprint == make_fingerprint(0)


class TestDuplicateGuard:
    def test_guard_rejects_pattern_of_another_identity(self, store):
        register(store)

        with pytest.raises(DuplicatePattern) as excinfo:
            register(store, identity_ref=BOB, duplicate_of=same_as_first)

        assert excinfo.value.error_code == "STATE_003"
        assert store.find(BOB, "facial") is None

    def test_guard_skips_own_credentials_and_other_modalities(self, store):
        register(store)
        register(store, identity_ref=BOB, modality="voice", duplicate_of=same_as_first)
        store.replace_active(
            ALICE, "facial", "e" * 64, "t" * 32, make_fingerprint(0), 0.9, START_TIME + 60,
            duplicate_of=same_as_first,
        )

        assert store.active_modalities(BOB) == ["voice"]
        assert len(store.list_credentials(ALICE)) == 2

    def test_guard_ignores_deactivated_credentials(self, store):
        first = register(store)
        store.deactivate(first, DeactivationReason.USER_REQUESTED, START_TIME + 5)

        register(store, identity_ref=BOB, duplicate_of=same_as_first)

        assert store.find(BOB, "facial") is not None

    def test_replace_active_checks_duplicates(self, store):
        register(store)
        bob_id = register(store, identity_ref=BOB, bit=1)

        with pytest.raises(DuplicatePattern):
            store.replace_active(
                BOB, "facial", "e" * 64, "t" * 32, make_fingerprint(0), 0.9, START_TIME + 60,
                duplicate_of=same_as_first,
            )

        assert store.find(BOB, "facial").id == bob_id
        assert len(store.list_credentials(BOB)) == 1

    def test_concurrent_enrolment_of_one_pattern_has_one_winner(self, store):
        barrier = threading.Barrier(2)
        winners = []
        duplicates = []

        def worker(identity_ref):
            barrier.wait()
            try:
                register(store, identity_ref=identity_ref, duplicate_of=same_as_first)
                winners.append(identity_ref)
            except DuplicatePattern:
                duplicates.append(identity_ref)

        threads = [threading.Thread(target=worker, args=(ref,)) for ref in (ALICE, BOB)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(winners) == 1
        assert len(duplicates) == 1
        assert len(store.list_active("facial")) == 1


class TestDeactivation:
    def test_deactivation_is_soft(self, store):
        credential_id = register(store)

        assert store.deactivate(credential_id, DeactivationReason.USER_REQUESTED, START_TIME + 5)

        assert store.find(ALICE, "facial") is None
        record = store.get(credential_id)
        assert not record.active
        assert record.deactivation_reason is DeactivationReason.USER_REQUESTED
        assert record.deactivated_at.timestamp() == START_TIME + 5

    def test_deactivate_twice(self, store):
        credential_id = register(store)
        store.deactivate(credential_id, DeactivationReason.SYSTEM, START_TIME)

        assert not store.deactivate(credential_id, DeactivationReason.SYSTEM, START_TIME)
        assert store.get(credential_id).deactivation_reason is DeactivationReason.SYSTEM

    def test_replace_active(self, store):
        old_id = register(store)

        replaced, new_id = store.replace_active(
            ALICE, "facial", "e" * 64, "t" * 32, make_fingerprint(1), 0.9, START_TIME + 60
        )

        assert replaced == old_id
        active = store.find(ALICE, "facial")
        assert active.id == new_id
        assert active.quality_score == 0.9
        old = store.get(old_id)
        assert old.deactivation_reason is DeactivationReason.PATTERN_UPDATE

    def test_replace_without_active_credential(self, store):
        with pytest.raises(NotRegistered):
            store.replace_active(
                ALICE, "facial", "e" * 64, "t" * 32, make_fingerprint(), 0.9, START_TIME
            )
        assert store.list_credentials(ALICE) == []

    def test_audit_listing_keeps_history(self, store):
        first = register(store)
        store.replace_active(
            ALICE, "facial", "e" * 64, "t" * 32, make_fingerprint(1), 0.9, START_TIME + 60
        )
        third = register(store, modality="voice", now=START_TIME + 120)

        listing = store.list_credentials(ALICE)

        assert [c.id for c in listing][0] == first
        assert listing[-1].id == third
        assert [c.active for c in listing] == [False, True, True]


class TestVerificationCounters:
    def test_success_updates_counters(self, store):
        credential_id = register(store)

        store.record_verification(credential_id, True, START_TIME + 30, similarity=0.93)

        credential = store.get(credential_id)
        assert credential.verification_count == 1
        assert credential.successful_verifications == 1
        assert credential.last_similarity_score == 0.93
        assert credential.last_verified_at.timestamp() == START_TIME + 30
        assert credential.success_rate == 1.0

    def test_failures_are_journaled(self, store):
        credential_id = register(store)

        store.record_verification(credential_id, False, START_TIME + 10)
        store.record_verification(credential_id, False, START_TIME + 20)
        store.record_verification(credential_id, True, START_TIME + 30, similarity=1.0)

        credential = store.get(credential_id)
        assert credential.verification_count == 3
        assert credential.successful_verifications == 1
        assert store.count_failures_since(credential_id, START_TIME) == 2
        assert store.count_failures_since(credential_id, START_TIME + 15) == 1

    def test_prune_failures_drops_old_entries(self, store):
        credential_id = register(store)
        for offset in (1, 2, 100):
            store.record_verification(credential_id, False, START_TIME + offset)

        assert store.prune_failures(START_TIME + 50) == 2
        assert store.count_failures_since(credential_id, START_TIME) == 1
        assert store.get(credential_id).verification_count == 3
        assert store.prune_failures(START_TIME + 50) == 0

    def test_unknown_credential(self, store):
        with pytest.raises(StorageError):
            store.record_verification("missing", True, START_TIME, similarity=1.0)

    def test_to_dict_omits_commitment(self, store):
        credential_id = register(store)

        data = store.get(credential_id).to_dict()

        assert "commitment_hash" not in data
        assert "commitment_salt" not in data
        assert data["active"] is True


def test_sqlite_store_persists_across_reopen(tmp_path):
    path = tmp_path / "nested" / "credentials.sqlite3"
    store = SQLiteCredentialStore(path)
    credential_id = register(store)
    store.record_verification(credential_id, False, START_TIME + 1)
    store.close()

    reopened = SQLiteCredentialStore(path)

    assert reopened.find(ALICE, "facial").id == credential_id
    assert reopened.count_failures_since(credential_id, START_TIME) == 1
    with pytest.raises(AlreadyRegistered):
        register(reopened)
