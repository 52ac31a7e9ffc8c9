"""Tests for fingerprint derivation and Argon2id commitments."""

import pytest

from humanitas_id.commitment import CommitmentScheme
from humanitas_id.constants import FAST_REJECT_THRESHOLD
from humanitas_id.data_models import Fingerprint
from humanitas_id.exceptions import CommitmentError, ValidationError
from humanitas_id.fingerprint_index import FingerprintIndex, layout_digest
from humanitas_id.normalization import canonicalize_features

from helpers import base_features, noisy_features, swapped_features


@pytest.fixture
def index():
    return FingerprintIndex()


@pytest.fixture
def scheme():
    return CommitmentScheme(time_cost=1, memory_cost=1024)


class TestFingerprintIndex:
    def test_derive_is_deterministic(self, index):
        features = canonicalize_features(base_features())

        first = index.derive(features)
        second = index.derive(dict(reversed(list(features.items()))))

        assert first == second
        assert len(first.bits) == 256
        assert set(first.bits) == {0, 1}
        assert first.feature_count == 64

    def test_bit_count_is_configurable(self):
        fingerprint = FingerprintIndex(bit_count=32).derive(canonicalize_features(base_features()))

        assert len(fingerprint.bits) == 32

    def test_bit_count_must_be_positive(self):
        with pytest.raises(ValidationError):
            FingerprintIndex(bit_count=0)

    def test_identical_fingerprints_have_similarity_one(self, index):
        fingerprint = index.derive(canonicalize_features(base_features()))

        assert index.compare(fingerprint, fingerprint) == 1.0

    def test_recapture_of_same_pattern_stays_close(self, index):
        base = canonicalize_features(base_features())
        recapture = canonicalize_features(noisy_features(base, amplitude=0.01))

        assert index.compare(index.derive(base), index.derive(recapture)) >= 0.9

    @pytest.mark.parametrize("seed", range(1, 21))
    def test_unrelated_patterns_fall_below_fast_reject(self, index, seed):
        enrolled = index.derive(canonicalize_features(base_features()))
        candidate = index.derive(canonicalize_features(base_features(seed)))

        assert index.compare(enrolled, candidate) < FAST_REJECT_THRESHOLD

    def test_swapped_features_are_not_similar(self, index):
        base = canonicalize_features(base_features())
        swapped = canonicalize_features(swapped_features(base))

        assert index.compare(index.derive(base), index.derive(swapped)) < FAST_REJECT_THRESHOLD

    def test_high_dimensional_patterns_stay_apart(self, index):
        first = index.derive(canonicalize_features(base_features(1, count=2048)))
        second = index.derive(canonicalize_features(base_features(2, count=2048)))

        assert index.compare(first, second) < 0.5

    def test_different_layouts_are_not_comparable(self, index):
        base = canonicalize_features(base_features())
        renamed = {f"g{name[1:]}": value for name, value in base.items()}

        assert index.compare(index.derive(base), index.derive(renamed)) == 0.0

    def test_layout_digest_ignores_order(self):
        assert layout_digest(["b", "a"]) == layout_digest(["a", "b"])
        assert len(layout_digest(["a"])) == 16

    def test_empty_features_rejected(self, index):
        with pytest.raises(ValidationError):
            index.derive({})

    def test_fingerprint_dict_round_trip(self, index):
        fingerprint = index.derive(canonicalize_features(base_features()))

        data = fingerprint.to_dict()

        assert isinstance(data["bits"], str)
        assert Fingerprint.from_dict(data) == fingerprint

    @pytest.mark.parametrize(
        "data",
        [
            {"bins": [0.5]},
            {"bits": "0120", "feature_count": 4, "layout": "x"},
            {"bits": "", "feature_count": 4, "layout": "x"},
        ],
    )
    def test_malformed_fingerprint(self, data):
        with pytest.raises(ValidationError):
            Fingerprint.from_dict(data)

    def test_bits_must_be_binary(self):
        with pytest.raises(ValidationError):
            Fingerprint(bits=(0, 2), feature_count=1, layout="x")


class TestCommitmentScheme:
    IDENTITY = "ab" * 32

    def test_commitment_matches_same_features(self, scheme):
        features = canonicalize_features(base_features())
        digest, salt = scheme.commit(self.IDENTITY, "facial", features)

        assert len(salt) == 16
        assert len(digest) == 64
        assert scheme.matches(self.IDENTITY, "facial", features, digest, salt)

    def test_commitment_rejects_different_features(self, scheme):
        features = canonicalize_features(base_features())
        digest, salt = scheme.commit(self.IDENTITY, "facial", features)
        other = canonicalize_features(noisy_features(features))

        assert not scheme.matches(self.IDENTITY, "facial", other, digest, salt)

    def test_commitment_is_bound_to_identity_and_modality(self, scheme):
        features = canonicalize_features(base_features())
        digest, salt = scheme.commit(self.IDENTITY, "facial", features)

        assert not scheme.matches("cd" * 32, "facial", features, digest, salt)
        assert not scheme.matches(self.IDENTITY, "voice", features, digest, salt)

    def test_fresh_salt_per_commitment(self, scheme):
        features = canonicalize_features(base_features())

        first, first_salt = scheme.commit(self.IDENTITY, "facial", features)
        second, second_salt = scheme.commit(self.IDENTITY, "facial", features)

        assert first_salt != second_salt
        assert first != second

    def test_digest_ignores_key_order(self, scheme):
        features = canonicalize_features(base_features())
        salt = scheme.new_salt()
        reordered = dict(reversed(list(features.items())))

        assert scheme.digest(self.IDENTITY, "facial", features, salt) == scheme.digest(
            self.IDENTITY, "facial", reordered, salt
        )

    def test_wrong_salt_length(self, scheme):
        with pytest.raises(CommitmentError) as excinfo:
            scheme.digest(self.IDENTITY, "facial", {"a": 0.5}, b"short")
        assert excinfo.value.error_code == "CRYPTO_001"

    @pytest.mark.parametrize(
        "kwargs",
        [{"time_cost": 0}, {"memory_cost": 4}, {"parallelism": 0}, {"hash_length": 8}],
    )
    def test_invalid_parameters(self, kwargs):
        params = {"time_cost": 1, "memory_cost": 1024}
        params.update(kwargs)
        with pytest.raises(CommitmentError):
            CommitmentScheme(**params)
