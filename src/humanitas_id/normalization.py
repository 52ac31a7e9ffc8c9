"""
Feature canonicalization for the HUMANITAS ID system.

This module turns extractor output into the canonical form shared by the
fingerprint index and the commitment: named features sorted by key, every
value squashed into [0, 1] and rounded to a fixed precision. Two captures of
the same logical pattern therefore canonicalize identically regardless of
field ordering or float noise below the precision.
"""

import json
import math
from typing import Any, Dict, Iterable, Mapping

import numpy as np
import structlog

from .constants import CANONICAL_PRECISION, IGNORED_PAYLOAD_KEYS
from .exceptions import ValidationError

# Initialize structured logger
logger = structlog.get_logger(__name__)


def squash_value(value: float) -> float:
    """
    Map a finite real number into [0, 1].

    Values already inside the interval are kept, values above 1 go through
    ``v / (1 + v)`` and negative values become 0.

    Parameters
    ----------
    value : float
        Raw feature value.

    Returns
    -------
    float
        Value in [0, 1].

    Raises
    ------
    ValidationError
        If the value is NaN or infinite.

    Examples
    --------
    >>> squash_value(0.25)
    0.25
    >>> squash_value(3.0)
    0.75
    """
    value = float(value)
    if not math.isfinite(value):
        raise ValidationError("Feature values must be finite", field="features")
    if value < 0.0:
        return 0.0
    if value <= 1.0:
        return value
    return value / (1.0 + value)


def canonicalize_features(
    features: Mapping[str, Any], precision: int = CANONICAL_PRECISION
) -> Dict[str, float]:
    """
    Canonicalize a named feature map.

    Parameters
    ----------
    features : Mapping[str, Any]
        Feature name to numeric value.
    precision : int, default=CANONICAL_PRECISION
        Decimal places kept per value.

    Returns
    -------
    Dict[str, float]
        Key-sorted map of squashed, rounded values.

    Raises
    ------
    ValidationError
        If the map is empty, a name is not a non-empty string or a value is
        not a finite number.
    """
    if not features:
        raise ValidationError("Feature map cannot be empty", field="features")

    canonical: Dict[str, float] = {}
    for name in sorted(features):
        if not isinstance(name, str) or not name:
            raise ValidationError("Feature names must be non-empty strings", field="features")
        value = features[name]
        if isinstance(value, bool) or not isinstance(value, (int, float, np.floating, np.integer)):
            raise ValidationError(f"Feature '{name}' is not numeric", field="features")
        canonical[name] = round(squash_value(value), precision)

    return canonical


def canonical_vector(features: Mapping[str, float]) -> np.ndarray:
    """Values of a canonical feature map in key order, as float64."""
    return np.array([features[name] for name in sorted(features)], dtype=np.float64)


def canonical_json(features: Mapping[str, float], precision: int = CANONICAL_PRECISION) -> str:
    """
    Deterministic JSON encoding of a canonical feature map.

    Pairs are emitted as a sorted list of ``[name, value]`` with values
    formatted at a fixed precision, so the encoding does not depend on dict
    ordering or float repr.
    """
    pairs = [[name, f"{float(features[name]):.{precision}f}"] for name in sorted(features)]
    return json.dumps(pairs, separators=(",", ":"), ensure_ascii=True)


def flatten_payload(
    payload: Mapping[str, Any],
    ignored_keys: Iterable[str] = IGNORED_PAYLOAD_KEYS,
    separator: str = ".",
    prefix: str = "",
) -> Dict[str, float]:
    """
    Flatten a nested numeric payload to dotted feature names.

    Nested mappings and lists are walked recursively; list items are named by
    index. Booleans, strings and ``None`` are skipped, as are subtrees whose
    key is in ``ignored_keys`` (timestamps, metadata) so that the result is
    independent of when the capture was taken.

    Parameters
    ----------
    payload : Mapping[str, Any]
        Raw nested payload.
    ignored_keys : Iterable[str]
        Keys dropped at any depth.
    separator : str, default="."
        Separator between name segments.
    prefix : str, default=""
        Name prefix for this level.

    Returns
    -------
    Dict[str, float]
        Flat mapping of feature name to raw value.

    Examples
    --------
    >>> flatten_payload({"a": {"b": 1, "timestamp": 5}, "c": [0.5, 0.25]})
    {'a.b': 1.0, 'c.0': 0.5, 'c.1': 0.25}
    """
    ignored = frozenset(ignored_keys)
    flat: Dict[str, float] = {}

    def _walk(node: Any, name: str) -> None:
        if isinstance(node, Mapping):
            for key, child in node.items():
                if key in ignored:
                    continue
                _walk(child, f"{name}{separator}{key}" if name else str(key))
        elif isinstance(node, (list, tuple)):
            for index, child in enumerate(node):
                _walk(child, f"{name}{separator}{index}" if name else str(index))
        elif isinstance(node, bool) or node is None:
            return
        elif isinstance(node, (int, float, np.floating, np.integer)):
            if name:
                flat[name] = float(node)

    _walk(payload, prefix)

    logger.debug("Payload flattened", feature_count=len(flat))
    return flat
