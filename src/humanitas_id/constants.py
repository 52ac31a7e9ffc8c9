"""
Constants and protocol parameters for the HUMANITAS ID system.

This module centralizes every fixed parameter of the identity-binding
protocol: quality gates, session lifetime, rate-limit thresholds, fingerprint
geometry and commitment hashing costs. Values that operators may tune are
re-exported through ``config`` with environment overrides.
"""

from typing import Dict, Final, Tuple

# =============================================================================
# Capture Quality
# =============================================================================

# Minimum acceptable capture quality (0.0 to 1.0); also the match floor
QUALITY_FLOOR: Final[float] = 0.6

# =============================================================================
# Fingerprint Index
# =============================================================================

# Sign bits in a derived fingerprint
FINGERPRINT_BITS: Final[int] = 256

# Highest similarity reported for a match that is not an exact commitment match
MAX_APPROXIMATE_SIMILARITY: Final[float] = 0.99

# Fingerprint similarity below which verification is rejected early
FAST_REJECT_THRESHOLD: Final[float] = 0.7

# Decimal places kept when canonicalizing feature values
CANONICAL_PRECISION: Final[int] = 6

# Minimum number of named features a capture must yield
MIN_FEATURE_COUNT: Final[int] = 4

# =============================================================================
# Sessions
# =============================================================================

# Pending capture lifetime in seconds (10 minutes)
SESSION_TTL_SECONDS: Final[int] = 600

# Interval between background sweeps of expired sessions
SESSION_SWEEP_INTERVAL_SECONDS: Final[int] = 30

# Random bytes per session token (256 bits)
SESSION_TOKEN_BYTES: Final[int] = 32

# =============================================================================
# Rate Limiting
# =============================================================================

# Soft threshold: cooldown once exceeded within the soft window
RATE_SOFT_THRESHOLD: Final[int] = 5
RATE_SOFT_WINDOW_SECONDS: Final[int] = 5 * 60

# Hard threshold: block until the rolling window ages out
RATE_HARD_THRESHOLD: Final[int] = 10
RATE_HARD_WINDOW_SECONDS: Final[int] = 15 * 60

# =============================================================================
# Verification Score
# =============================================================================

SCORE_MAX: Final[float] = 100.0
SCORE_RECENCY_DAYS: Final[float] = 10.0
SCORE_CONSISTENCY_BASELINE: Final[float] = 0.8
SCORE_CONSISTENCY_WEIGHT: Final[float] = 20.0
SCORE_FAILURE_PENALTY: Final[float] = 5.0
SCORE_FAILURE_WINDOW_SECONDS: Final[int] = 60 * 60

# =============================================================================
# Sybil Resistance
# =============================================================================

# Fingerprint similarity at which a pattern is treated as already enrolled
DUPLICATE_PATTERN_THRESHOLD: Final[float] = 0.97

# =============================================================================
# Cryptographic Parameters (Argon2id commitment)
# =============================================================================

ARGON2_TIME_COST: Final[int] = 3
ARGON2_MEMORY_COST: Final[int] = 65536
ARGON2_PARALLELISM: Final[int] = 1
ARGON2_HASH_LENGTH: Final[int] = 32
ARGON2_SALT_LENGTH: Final[int] = 16

# Domain separation prefix for signed protocol messages
SIGNATURE_DOMAIN: Final[str] = "HUMANITAS-ID|v1"

# Raw Ed25519 sizes
ED25519_PUBLIC_KEY_BYTES: Final[int] = 32
ED25519_SIGNATURE_BYTES: Final[int] = 64

# =============================================================================
# Modalities, Purposes, Reasons
# =============================================================================

MODALITY_FACIAL: Final[str] = "facial"
MODALITY_BEHAVIORAL: Final[str] = "behavioral"

PURPOSE_CAPTURE: Final[str] = "capture"
PURPOSE_REGISTER: Final[str] = "register"
PURPOSE_VERIFY: Final[str] = "verify"
PURPOSE_UPDATE: Final[str] = "update"
PURPOSE_REMOVAL: Final[str] = "removal"

SIGNATURE_PURPOSES: Final[Tuple[str, ...]] = (
    PURPOSE_CAPTURE,
    PURPOSE_REGISTER,
    PURPOSE_VERIFY,
    PURPOSE_UPDATE,
    PURPOSE_REMOVAL,
)

# Quality weights for the reference extractors
FACIAL_COMPONENT_WEIGHTS: Final[Dict[str, float]] = {
    "landmarks": 0.35,
    "texture": 0.25,
    "geometric": 0.25,
    "temporal": 0.15,
}

BEHAVIORAL_COMPONENT_WEIGHTS: Final[Dict[str, float]] = {
    "mouse_dynamics": 0.30,
    "keystroke_dynamics": 0.30,
    "interaction_patterns": 0.25,
    "navigation_behavior": 0.15,
}

# Payload subtrees that never contribute features
IGNORED_PAYLOAD_KEYS: Final[Tuple[str, ...]] = ("timestamp", "metadata")

# =============================================================================
# Storage
# =============================================================================

DEFAULT_DB_FILENAME: Final[str] = "humanitas_id.sqlite3"
SQLITE_BUSY_TIMEOUT_SECONDS: Final[float] = 5.0
