"""
Pattern extractors for the HUMANITAS ID system.

Feature extraction is a pluggable capability: the core only ever talks to a
``ExtractorRegistry`` keyed by modality tag, and each modality is served by a
``PatternExtractor`` that turns a raw payload into canonical named features
plus a quality estimate.

Three reference extractors are provided. They do no signal processing; they
consume payloads already produced by upstream capture pipelines:

- ``FacialPatternExtractor``: components ``landmarks``, ``texture``,
  ``geometric`` and ``temporal``, quality weighted 0.35/0.25/0.25/0.15.
- ``BehavioralPatternExtractor``: components ``mouse_dynamics``,
  ``keystroke_dynamics``, ``interaction_patterns`` and
  ``navigation_behavior``, weighted 0.30/0.30/0.25/0.15 and scaled by data
  completeness.
- ``FeatureMapExtractor``: a pre-computed ``features`` map plus an explicit
  ``quality`` value, for any modality.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Mapping, Optional, Tuple

import structlog

from .constants import (
    BEHAVIORAL_COMPONENT_WEIGHTS,
    FACIAL_COMPONENT_WEIGHTS,
    MIN_FEATURE_COUNT,
    MODALITY_BEHAVIORAL,
    MODALITY_FACIAL,
)
from .data_models import ExtractionResult
from .exceptions import InsufficientSignal, UnsupportedModality, ValidationError
from .normalization import canonicalize_features, flatten_payload
from .utils import clamp, timer

# Initialize structured logger
logger = structlog.get_logger(__name__)

# Per-component quality inputs for facial captures: (keys, fallback quality)
FACIAL_QUALITY_INPUTS: Dict[str, Tuple[Tuple[str, ...], float]] = {
    "landmarks": (("confidence",), 0.0),
    "texture": (("sharpness", "illumination"), 0.8),
    "geometric": (("symmetry",), 0.85),
    "temporal": (("stability",), 0.8),
}

# Quality credited to each behavioral component that carries data
BEHAVIORAL_PRESENCE_QUALITY = 0.8


def _require_mapping(raw_payload: Any, modality: str) -> Mapping[str, Any]:
    if not isinstance(raw_payload, Mapping):
        raise ValidationError(
            f"Payload for modality '{modality}' must be a mapping", field="raw_payload"
        )
    return raw_payload


def _unit_value(value: Any, name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{name} must be a number", field=name)
    if not 0.0 <= float(value) <= 1.0:
        raise ValidationError(f"{name} must be between 0.0 and 1.0", field=name)
    return float(value)


class PatternExtractor(ABC):
    """
    Capability interface: raw payload to canonical features and quality.

    Subclasses set ``modality`` and implement ``_extract``; the public
    ``extract`` enforces the minimum feature count and canonical form.
    """

    modality: str = ""

    def __init__(self, min_features: int = MIN_FEATURE_COUNT) -> None:
        self.min_features = min_features

    @abstractmethod
    def _extract(self, payload: Mapping[str, Any]) -> Tuple[Dict[str, float], float, Dict[str, float]]:
        """Return raw named features, quality and per-component quality."""

    @timer
    def extract(self, raw_payload: Any) -> ExtractionResult:
        """
        Extract canonical features from a raw payload.

        Parameters
        ----------
        raw_payload : Any
            Modality-specific payload; must be a mapping.

        Returns
        -------
        ExtractionResult
            Canonical features with quality in [0, 1].

        Raises
        ------
        ValidationError
            If the payload is malformed.
        InsufficientSignal
            If fewer than ``min_features`` features are found.
        """
        payload = _require_mapping(raw_payload, self.modality)
        raw_features, quality, components = self._extract(payload)

        if len(raw_features) < self.min_features:
            raise InsufficientSignal(self.modality, len(raw_features), self.min_features)

        features = canonicalize_features(raw_features)
        quality = round(clamp(quality, 0.0, 1.0), 6)

        logger.debug(
            "Pattern extracted",
            modality=self.modality,
            feature_count=len(features),
            quality_score=quality,
        )

        return ExtractionResult(features=features, quality_score=quality, components=components)


class FacialPatternExtractor(PatternExtractor):
    """
    Reference extractor for facial captures.

    Each component is a mapping of numeric measurements, nested freely. The
    quality inputs (``landmarks.confidence``, ``texture.sharpness``,
    ``texture.illumination``, ``geometric.symmetry``,
    ``temporal.stability``) drive the quality estimate and are not used as
    features, since they vary from capture to capture.
    """

    modality = MODALITY_FACIAL

    def _extract(self, payload):
        features: Dict[str, float] = {}
        components: Dict[str, float] = {}
        quality = 0.0

        for name, weight in FACIAL_COMPONENT_WEIGHTS.items():
            component = payload.get(name)
            if component is None:
                continue
            if not isinstance(component, Mapping):
                raise ValidationError(
                    f"Facial component '{name}' must be a mapping", field=name
                )

            quality_keys, fallback = FACIAL_QUALITY_INPUTS[name]
            measurements = {k: v for k, v in component.items() if k not in quality_keys}
            component_features = flatten_payload(measurements, prefix=name)
            if not component_features:
                continue
            features.update(component_features)

            if all(key in component for key in quality_keys):
                inputs = [_unit_value(component[key], f"{name}.{key}") for key in quality_keys]
                if name == "texture":
                    component_quality = inputs[0] * 0.6 + inputs[1] * 0.4
                else:
                    component_quality = inputs[0]
            else:
                component_quality = fallback

            components[name] = component_quality
            quality += weight * component_quality

        return features, min(quality, 1.0), components


class BehavioralPatternExtractor(PatternExtractor):
    """
    Reference extractor for behavioral captures.

    Every component with at least one numeric measurement is credited
    ``BEHAVIORAL_PRESENCE_QUALITY``. The weighted sum is scaled by
    ``metadata.data_completeness`` when the capture pipeline reports it, and
    by the fraction of components present otherwise.
    """

    modality = MODALITY_BEHAVIORAL

    def _extract(self, payload):
        features: Dict[str, float] = {}
        components: Dict[str, float] = {}
        quality = 0.0

        for name, weight in BEHAVIORAL_COMPONENT_WEIGHTS.items():
            component = payload.get(name)
            if component is None:
                continue
            if not isinstance(component, (Mapping, list, tuple)):
                raise ValidationError(
                    f"Behavioral component '{name}' must be a mapping or sequence",
                    field=name,
                )
            component_features = flatten_payload({name: component})
            if not component_features:
                continue
            features.update(component_features)
            components[name] = BEHAVIORAL_PRESENCE_QUALITY
            quality += weight * BEHAVIORAL_PRESENCE_QUALITY

        metadata = payload.get("metadata")
        completeness: Optional[float] = None
        if isinstance(metadata, Mapping) and "data_completeness" in metadata:
            completeness = _unit_value(metadata["data_completeness"], "metadata.data_completeness")
        if completeness is None:
            completeness = len(components) / len(BEHAVIORAL_COMPONENT_WEIGHTS)

        components["data_completeness"] = completeness
        return features, min(quality * completeness, 1.0), components


class FeatureMapExtractor(PatternExtractor):
    """
    Extractor for payloads that already carry named features.

    Payload shape: ``{"features": {name: value, ...}, "quality": float}``.
    Nested feature maps are flattened to dotted names.

    Parameters
    ----------
    modality : str
        Modality tag served by this extractor.
    min_features : int, default=MIN_FEATURE_COUNT
        Minimum number of features required.
    """

    def __init__(self, modality: str, min_features: int = MIN_FEATURE_COUNT) -> None:
        super().__init__(min_features)
        self.modality = modality

    def _extract(self, payload):
        features = payload.get("features")
        if not isinstance(features, Mapping):
            raise ValidationError("Payload must contain a 'features' mapping", field="features")
        if "quality" not in payload:
            raise ValidationError("Payload must contain a 'quality' value", field="quality")

        quality = _unit_value(payload["quality"], "quality")
        return flatten_payload(features), quality, {}


class ExtractorRegistry:
    """
    Registry of pattern extractors keyed by modality tag.

    Examples
    --------
    >>> registry = ExtractorRegistry()
    >>> registry.register(FeatureMapExtractor("voice"))
    >>> registry.modalities()
    ['voice']
    """

    def __init__(self) -> None:
        self._extractors: Dict[str, PatternExtractor] = {}

    def register(self, extractor: PatternExtractor, replace: bool = False) -> None:
        modality = extractor.modality
        if not isinstance(modality, str) or not modality:
            raise ValidationError("Extractor must declare a modality tag", field="modality")
        if modality in self._extractors and not replace:
            raise ValidationError(
                f"An extractor is already registered for modality '{modality}'",
                field="modality",
            )
        self._extractors[modality] = extractor
        logger.info(
            "Pattern extractor registered",
            modality=modality,
            extractor=type(extractor).__name__,
        )

    def get(self, modality: str) -> PatternExtractor:
        try:
            return self._extractors[modality]
        except KeyError:
            raise UnsupportedModality(modality) from None

    def supports(self, modality: str) -> bool:
        return modality in self._extractors

    def modalities(self) -> List[str]:
        return sorted(self._extractors)

    def extract(self, modality: str, raw_payload: Any) -> ExtractionResult:
        """
        Dispatch extraction to the extractor registered for ``modality``.

        Raises
        ------
        UnsupportedModality
            If no extractor serves the modality.
        """
        return self.get(modality).extract(raw_payload)


def default_registry() -> ExtractorRegistry:
    """Registry with the facial and behavioral reference extractors."""
    registry = ExtractorRegistry()
    registry.register(FacialPatternExtractor())
    registry.register(BehavioralPatternExtractor())
    return registry
