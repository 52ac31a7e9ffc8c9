"""
Fingerprint derivation and comparison for the HUMANITAS ID system.

A fingerprint is a sign sketch of a canonical feature map. The values in key
order are centered on their mean and projected onto ``FINGERPRINT_BITS``
random directions; each bit records the sign of one projection. The
projection matrix is derived from the layout (a short digest of the sorted
feature names) and the feature count, so every feature keeps its position
and two captures with the same layout are always projected the same way.

Derivation depends only on the canonical features, so two captures of the
same pattern give the same fingerprint whenever they were taken. The sketch
cannot be inverted back to feature values, and comparing two fingerprints
costs ``O(FINGERPRINT_BITS)`` regardless of feature count, which makes it
suitable as a pre-filter ahead of the commitment.
"""

import hashlib
import math
from functools import lru_cache
from typing import Mapping

import numpy as np
import structlog

from .constants import FINGERPRINT_BITS
from .data_models import Fingerprint
from .exceptions import ValidationError
from .normalization import canonical_vector

# Initialize structured logger
logger = structlog.get_logger(__name__)

LAYOUT_DIGEST_CHARS = 16


def layout_digest(feature_names) -> str:
    """Short SHA-256 digest of the sorted feature names."""
    joined = "\n".join(sorted(feature_names)).encode("utf-8")
    return hashlib.sha256(joined).hexdigest()[:LAYOUT_DIGEST_CHARS]


@lru_cache(maxsize=64)
def _projection(layout: str, feature_count: int, bit_count: int) -> np.ndarray:
    """Deterministic Gaussian projection keyed by layout and dimensions."""
    key_material = f"{layout}|{feature_count}|{bit_count}".encode("utf-8")
    seed = int.from_bytes(hashlib.sha256(key_material).digest()[:8], "big", signed=False)
    rng = np.random.default_rng(seed)

    matrix = rng.normal(0.0, 1.0 / math.sqrt(bit_count), size=(bit_count, feature_count))
    matrix.setflags(write=False)
    return matrix


class FingerprintIndex:
    """
    Derives and compares fingerprints.

    Parameters
    ----------
    bit_count : int, default=FINGERPRINT_BITS
        Number of sign bits per fingerprint.
    precision : int, default=6
        Decimal places kept in similarities.
    """

    def __init__(self, bit_count: int = FINGERPRINT_BITS, precision: int = 6) -> None:
        if bit_count < 1:
            raise ValidationError("Fingerprint bit count must be positive", field="bit_count")
        self.bit_count = bit_count
        self.precision = precision

    def derive(self, features: Mapping[str, float]) -> Fingerprint:
        """
        Derive the fingerprint of a canonical feature map.

        Parameters
        ----------
        features : Mapping[str, float]
            Canonical features (values in [0, 1]).

        Returns
        -------
        Fingerprint
            Deterministic sign sketch of the features.

        Raises
        ------
        ValidationError
            If the feature map is empty.
        """
        if not features:
            raise ValidationError("Cannot fingerprint an empty feature map", field="features")

        layout = layout_digest(features.keys())
        values = canonical_vector(features)
        centered = values - values.mean()

        projected = _projection(layout, len(values), self.bit_count) @ centered
        bits = tuple(int(bit) for bit in (projected >= 0.0))

        return Fingerprint(bits=bits, feature_count=len(values), layout=layout)

    def compare(self, first: Fingerprint, second: Fingerprint) -> float:
        """
        Similarity of two fingerprints in [0, 1].

        Bits are compared position by position and the similarity is
        ``1 - 2 * disagreeing / total``, clipped at 0. Unrelated patterns
        disagree on about half of the bits and score close to 0.
        Fingerprints with a different layout or bit count have similarity
        0.0.

        Parameters
        ----------
        first, second : Fingerprint
            Fingerprints to compare.

        Returns
        -------
        float
            Similarity, 1.0 for identical fingerprints.

        Examples
        --------
        >>> index = FingerprintIndex()
        >>> fingerprint = index.derive({"a": 0.1, "b": 0.9, "c": 0.4})
        >>> index.compare(fingerprint, fingerprint)
        1.0
        """
        if (
            first.layout != second.layout
            or first.feature_count != second.feature_count
            or len(first.bits) != len(second.bits)
        ):
            return 0.0

        a = np.asarray(first.bits, dtype=np.uint8)
        b = np.asarray(second.bits, dtype=np.uint8)
        disagreement = np.count_nonzero(a != b) / float(a.size)
        similarity = 1.0 - 2.0 * disagreement

        return round(float(np.clip(similarity, 0.0, 1.0)), self.precision)
