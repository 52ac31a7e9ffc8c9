"""
Configuration management for the HUMANITAS ID system.

This module handles all configuration loading from environment variables
and .env files. Every tunable falls back to the protocol default declared in
``constants`` so a bare deployment behaves exactly as the protocol specifies.
"""

import os
from pathlib import Path
from typing import Any, Dict

from dotenv import load_dotenv

from .constants import (
    ARGON2_MEMORY_COST as _ARGON2_MEMORY_COST,
    ARGON2_PARALLELISM as _ARGON2_PARALLELISM,
    ARGON2_TIME_COST as _ARGON2_TIME_COST,
    DEFAULT_DB_FILENAME,
    DUPLICATE_PATTERN_THRESHOLD as _DUPLICATE_PATTERN_THRESHOLD,
    FAST_REJECT_THRESHOLD as _FAST_REJECT_THRESHOLD,
    QUALITY_FLOOR as _QUALITY_FLOOR,
    RATE_HARD_THRESHOLD as _RATE_HARD_THRESHOLD,
    RATE_HARD_WINDOW_SECONDS as _RATE_HARD_WINDOW_SECONDS,
    RATE_SOFT_THRESHOLD as _RATE_SOFT_THRESHOLD,
    RATE_SOFT_WINDOW_SECONDS as _RATE_SOFT_WINDOW_SECONDS,
    SESSION_SWEEP_INTERVAL_SECONDS as _SESSION_SWEEP_INTERVAL_SECONDS,
    SESSION_TTL_SECONDS as _SESSION_TTL_SECONDS,
)
from .exceptions import ConfigurationError

# Load environment variables from .env file if it exists
load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


# =============================================================================
# Base Paths
# =============================================================================
BASE_DIR: Path = Path(__file__).resolve().parent.parent

# Project root directory (parent of src/)
PROJECT_ROOT: Path = BASE_DIR.parent

# Directory holding the credential database
DATA_DIR: Path = Path(os.getenv("HUMANITAS_ID_DATA_DIR", str(PROJECT_ROOT / "data")))

# Credential database file
DB_PATH: Path = Path(os.getenv("HUMANITAS_ID_DB_PATH", str(DATA_DIR / DEFAULT_DB_FILENAME)))

# =============================================================================
# Logging Configuration
# =============================================================================
# Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

# Render JSON lines instead of the developer console format
STRUCTURED_LOGGING: bool = _env_bool("STRUCTURED_LOGGING", "true")

# =============================================================================
# Session Configuration
# =============================================================================
SESSION_TTL_SECONDS: int = int(os.getenv("SESSION_TTL_SECONDS", str(_SESSION_TTL_SECONDS)))

SESSION_SWEEP_INTERVAL_SECONDS: float = float(
    os.getenv("SESSION_SWEEP_INTERVAL_SECONDS", str(_SESSION_SWEEP_INTERVAL_SECONDS))
)

# =============================================================================
# Matching Thresholds
# =============================================================================
QUALITY_FLOOR: float = float(os.getenv("QUALITY_FLOOR", str(_QUALITY_FLOOR)))

FAST_REJECT_THRESHOLD: float = float(
    os.getenv("FAST_REJECT_THRESHOLD", str(_FAST_REJECT_THRESHOLD))
)

# Cross-identity duplicate pattern detection
ENABLE_DUPLICATE_PATTERN_CHECK: bool = _env_bool("ENABLE_DUPLICATE_PATTERN_CHECK", "true")

DUPLICATE_PATTERN_THRESHOLD: float = float(
    os.getenv("DUPLICATE_PATTERN_THRESHOLD", str(_DUPLICATE_PATTERN_THRESHOLD))
)

# =============================================================================
# Rate Limiting Configuration
# =============================================================================
RATE_SOFT_THRESHOLD: int = int(os.getenv("RATE_SOFT_THRESHOLD", str(_RATE_SOFT_THRESHOLD)))

RATE_SOFT_WINDOW_SECONDS: int = int(
    os.getenv("RATE_SOFT_WINDOW_SECONDS", str(_RATE_SOFT_WINDOW_SECONDS))
)

RATE_HARD_THRESHOLD: int = int(os.getenv("RATE_HARD_THRESHOLD", str(_RATE_HARD_THRESHOLD)))

RATE_HARD_WINDOW_SECONDS: int = int(
    os.getenv("RATE_HARD_WINDOW_SECONDS", str(_RATE_HARD_WINDOW_SECONDS))
)

# =============================================================================
# Security and Cryptography Configuration
# =============================================================================
ARGON2_TIME_COST: int = int(os.getenv("ARGON2_TIME_COST", str(_ARGON2_TIME_COST)))

# Memory cost in KB
ARGON2_MEMORY_COST: int = int(os.getenv("ARGON2_MEMORY_COST", str(_ARGON2_MEMORY_COST)))

ARGON2_PARALLELISM: int = int(os.getenv("ARGON2_PARALLELISM", str(_ARGON2_PARALLELISM)))

# =============================================================================
# Development and Debugging Configuration
# =============================================================================
# Skips validation on import
DEBUG_MODE: bool = _env_bool("DEBUG_MODE", "false")


# =============================================================================
# Configuration Validation
# =============================================================================
def validate_configuration() -> bool:
    """
    Validate the current configuration settings.

    Returns
    -------
    bool
        True if configuration is valid.

    Raises
    ------
    ConfigurationError
        If any configuration parameter is invalid. All problems are reported
        together.
    """
    errors = []

    if SESSION_TTL_SECONDS < 1:
        errors.append("SESSION_TTL_SECONDS must be at least 1")

    if SESSION_SWEEP_INTERVAL_SECONDS <= 0:
        errors.append("SESSION_SWEEP_INTERVAL_SECONDS must be positive")

    for name, value in (
        ("QUALITY_FLOOR", QUALITY_FLOOR),
        ("FAST_REJECT_THRESHOLD", FAST_REJECT_THRESHOLD),
        ("DUPLICATE_PATTERN_THRESHOLD", DUPLICATE_PATTERN_THRESHOLD),
    ):
        if not 0.0 <= value <= 1.0:
            errors.append(f"{name} must be between 0.0 and 1.0")

    if RATE_SOFT_THRESHOLD < 1 or RATE_HARD_THRESHOLD < 1:
        errors.append("Rate limit thresholds must be at least 1")

    if RATE_SOFT_THRESHOLD >= RATE_HARD_THRESHOLD:
        errors.append("RATE_SOFT_THRESHOLD must be lower than RATE_HARD_THRESHOLD")

    if RATE_SOFT_WINDOW_SECONDS > RATE_HARD_WINDOW_SECONDS:
        errors.append("RATE_SOFT_WINDOW_SECONDS cannot exceed RATE_HARD_WINDOW_SECONDS")

    if ARGON2_TIME_COST < 1:
        errors.append("ARGON2_TIME_COST must be at least 1")

    if ARGON2_MEMORY_COST < 8:
        errors.append("ARGON2_MEMORY_COST must be at least 8 KB")

    if ARGON2_PARALLELISM < 1:
        errors.append("ARGON2_PARALLELISM must be at least 1")

    valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    if LOG_LEVEL not in valid_log_levels:
        errors.append(f"LOG_LEVEL must be one of {valid_log_levels}")

    if errors:
        raise ConfigurationError(
            "Configuration validation failed:\n"
            + "\n".join(f"- {error}" for error in errors)
        )

    return True


def get_config_summary() -> Dict[str, Any]:
    """
    Get a summary of the current configuration.

    Returns
    -------
    dict
        Dictionary containing key configuration parameters.
    """
    return {
        "storage": {
            "db_path": str(DB_PATH),
        },
        "sessions": {
            "ttl_seconds": SESSION_TTL_SECONDS,
            "sweep_interval_seconds": SESSION_SWEEP_INTERVAL_SECONDS,
        },
        "matching": {
            "quality_floor": QUALITY_FLOOR,
            "fast_reject_threshold": FAST_REJECT_THRESHOLD,
            "duplicate_pattern_check": ENABLE_DUPLICATE_PATTERN_CHECK,
            "duplicate_pattern_threshold": DUPLICATE_PATTERN_THRESHOLD,
        },
        "rate_limit": {
            "soft_threshold": RATE_SOFT_THRESHOLD,
            "soft_window_seconds": RATE_SOFT_WINDOW_SECONDS,
            "hard_threshold": RATE_HARD_THRESHOLD,
            "hard_window_seconds": RATE_HARD_WINDOW_SECONDS,
        },
        "argon2": {
            "time_cost": ARGON2_TIME_COST,
            "memory_cost": ARGON2_MEMORY_COST,
            "parallelism": ARGON2_PARALLELISM,
        },
        "logging": {
            "level": LOG_LEVEL,
            "structured": STRUCTURED_LOGGING,
        },
    }


# Validate configuration on import
if not DEBUG_MODE:
    validate_configuration()
