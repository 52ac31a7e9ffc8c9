"""Tests for the extractor registry, reference extractors and canonicalization."""

import pytest

from humanitas_id.exceptions import InsufficientSignal, UnsupportedModality, ValidationError
from humanitas_id.extractors import (
    BehavioralPatternExtractor,
    ExtractorRegistry,
    FacialPatternExtractor,
    FeatureMapExtractor,
    default_registry,
)
from humanitas_id.normalization import (
    canonical_json,
    canonicalize_features,
    flatten_payload,
    squash_value,
)


def facial_payload(timestamp=1.0):
    return {
        "landmarks": {"eyes": {"left": [0.31, 0.42], "right": [0.69, 0.42]}, "confidence": 0.9},
        "texture": {"uniformity": 0.88, "sharpness": 0.8, "illumination": 0.7},
        "geometric": {"eye_distance": 0.38, "nose_mouth": 0.21, "symmetry": 0.9},
        "temporal": {"blink_rate": 0.3, "stability": 0.8},
        "timestamp": timestamp,
        "metadata": {"device": "cam-1"},
    }


def behavioral_payload(**metadata):
    payload = {
        "mouse_dynamics": {"velocity": 0.4, "acceleration": 0.2},
        "keystroke_dynamics": {"dwell": 0.12, "flight": 0.31},
        "interaction_patterns": {"response_time": 0.5},
        "navigation_behavior": [0.1, 0.3],
    }
    if metadata:
        payload["metadata"] = metadata
    return payload


class TestFacialExtractor:
    def test_weighted_quality(self):
        result = FacialPatternExtractor().extract(facial_payload())

        # .35*.9 + .25*(.8*.6 + .7*.4) + .25*.9 + .15*.8
        assert result.quality_score == pytest.approx(0.85)
        assert result.components["texture"] == pytest.approx(0.76)

    def test_quality_inputs_and_timestamps_are_not_features(self):
        result = FacialPatternExtractor().extract(facial_payload())

        assert "landmarks.confidence" not in result.features
        assert "timestamp" not in result.features
        assert "landmarks.eyes.left.0" in result.features
        assert "geometric.eye_distance" in result.features

    def test_features_independent_of_capture_time(self):
        extractor = FacialPatternExtractor()
        first = extractor.extract(facial_payload(timestamp=1.0))
        second = extractor.extract(facial_payload(timestamp=99999.0))

        assert first.features == second.features

    def test_missing_component_lowers_quality(self):
        payload = facial_payload()
        del payload["landmarks"]

        result = FacialPatternExtractor().extract(payload)

        assert result.quality_score == pytest.approx(0.85 - 0.315)

    def test_malformed_component(self):
        payload = facial_payload()
        payload["texture"] = 0.5
        with pytest.raises(ValidationError):
            FacialPatternExtractor().extract(payload)


class TestBehavioralExtractor:
    def test_full_payload_with_reported_completeness(self):
        result = BehavioralPatternExtractor().extract(behavioral_payload(data_completeness=1.0))

        assert result.quality_score == pytest.approx(0.8)
        assert len(result.features) == 7

    def test_completeness_defaults_to_fraction_present(self):
        payload = behavioral_payload()
        del payload["interaction_patterns"]
        del payload["navigation_behavior"]

        result = BehavioralPatternExtractor().extract(payload)

        assert result.quality_score == pytest.approx((0.3 + 0.3) * 0.8 * 0.5)


class TestFeatureMapExtractor:
    def test_explicit_quality(self):
        extractor = FeatureMapExtractor("voice")
        result = extractor.extract({"features": {"a": 0.1, "b": 0.2, "c": 2.0, "d": -1}, "quality": 0.7})

        assert result.quality_score == 0.7
        assert result.features == {"a": 0.1, "b": 0.2, "c": pytest.approx(2 / 3, abs=1e-6), "d": 0.0}

    def test_too_few_features(self):
        with pytest.raises(InsufficientSignal) as excinfo:
            FeatureMapExtractor("voice").extract({"features": {"a": 0.1}, "quality": 0.9})
        assert excinfo.value.error_code == "CAPTURE_003"

    @pytest.mark.parametrize(
        "payload",
        [
            None,
            [],
            {"quality": 0.9},
            {"features": {"a": 1, "b": 1, "c": 1, "d": 1}},
            {"features": {"a": 1, "b": 1, "c": 1, "d": 1}, "quality": 1.5},
        ],
    )
    def test_malformed_payloads(self, payload):
        with pytest.raises(ValidationError):
            FeatureMapExtractor("voice").extract(payload)


class TestRegistry:
    def test_dispatch_by_modality(self):
        registry = default_registry()

        assert registry.modalities() == ["behavioral", "facial"]
        assert registry.extract("facial", facial_payload()).quality_score == pytest.approx(0.85)

    def test_unsupported_modality(self):
        with pytest.raises(UnsupportedModality) as excinfo:
            default_registry().extract("iris", {})
        assert excinfo.value.context["modality"] == "iris"

    def test_duplicate_registration_needs_replace(self):
        registry = ExtractorRegistry()
        registry.register(FeatureMapExtractor("voice"))

        with pytest.raises(ValidationError):
            registry.register(FeatureMapExtractor("voice"))
        registry.register(FeatureMapExtractor("voice", min_features=2), replace=True)
        assert registry.get("voice").min_features == 2


class TestCanonicalization:
    def test_key_order_does_not_matter(self):
        first = canonicalize_features({"b": 0.2, "a": 0.1})
        second = canonicalize_features({"a": 0.1, "b": 0.2})

        assert list(first) == ["a", "b"]
        assert canonical_json(first) == canonical_json(second)

    def test_rounding_hides_float_noise(self):
        noisy = canonicalize_features({"a": 0.1 + 1e-12})
        assert canonical_json(noisy) == canonical_json({"a": 0.1})

    def test_squash(self):
        assert squash_value(0.4) == 0.4
        assert squash_value(1.0) == 1.0
        assert squash_value(3.0) == 0.75
        assert squash_value(-2) == 0.0
        with pytest.raises(ValidationError):
            squash_value(float("nan"))

    def test_non_numeric_feature(self):
        with pytest.raises(ValidationError):
            canonicalize_features({"a": "high"})
        with pytest.raises(ValidationError):
            canonicalize_features({})

    def test_flatten_skips_non_numeric_and_ignored_keys(self):
        flat = flatten_payload(
            {"a": {"b": 1, "label": "x", "ok": True}, "c": [0.5, None], "metadata": {"z": 1}}
        )

        assert flat == {"a.b": 1.0, "c.0": 0.5}
