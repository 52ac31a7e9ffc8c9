"""
Data models for the HUMANITAS ID system.

This module defines the core data structures that flow through the
identity-binding protocol: extraction results, pending capture sessions,
durable credentials and the per-session protocol state machine. All models
use dataclasses with validation in ``__post_init__``.

Raw feature values only ever live in ``ExtractionResult`` and
``CaptureSession``; neither is persisted, and their ``to_dict`` methods omit
the values.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple

from .constants import SCORE_MAX
from .exceptions import ValidationError


class DeactivationReason(str, Enum):
    """Why a credential stopped being active."""

    USER_REQUESTED = "user_requested"
    PATTERN_UPDATE = "pattern_update"
    SECURITY_CONCERN = "security_concern"
    SYSTEM = "system"


class Action(str, Enum):
    """Action requested when completing a capture."""

    REGISTER = "register"
    VERIFY = "verify"
    UPDATE = "update"


class Outcome(str, Enum):
    """Result reported by ``complete_capture``."""

    REGISTERED = "registered"
    VERIFIED = "verified"
    UPDATED = "updated"


class SessionState(str, Enum):
    """
    Protocol state of a single capture session.

    ``IDLE -> PENDING -> {REGISTERED | VERIFIED | REJECTED | EXPIRED}``; the
    last four are terminal.
    """

    IDLE = "idle"
    PENDING = "pending"
    REGISTERED = "registered"
    VERIFIED = "verified"
    REJECTED = "rejected"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES: FrozenSet[SessionState] = frozenset(
    {
        SessionState.REGISTERED,
        SessionState.VERIFIED,
        SessionState.REJECTED,
        SessionState.EXPIRED,
    }
)

ALLOWED_TRANSITIONS: Dict[SessionState, FrozenSet[SessionState]] = {
    SessionState.IDLE: frozenset({SessionState.PENDING}),
    SessionState.PENDING: _TERMINAL_STATES,
    SessionState.REGISTERED: frozenset(),
    SessionState.VERIFIED: frozenset(),
    SessionState.REJECTED: frozenset(),
    SessionState.EXPIRED: frozenset(),
}


def advance(current: SessionState, target: SessionState) -> SessionState:
    """
    Move a session to ``target``, enforcing the protocol state machine.

    Parameters
    ----------
    current : SessionState
        State the session is in.
    target : SessionState
        Requested next state.

    Returns
    -------
    SessionState
        ``target`` when the transition is allowed.

    Raises
    ------
    ValidationError
        If the transition is not part of the protocol.

    Examples
    --------
    >>> advance(SessionState.IDLE, SessionState.PENDING)
    <SessionState.PENDING: 'pending'>
    """
    if target not in ALLOWED_TRANSITIONS[current]:
        raise ValidationError(
            f"Illegal session transition {current.value} -> {target.value}",
            field="session_state",
        )
    return target


def _check_unit_interval(name: str, value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{name} must be a number", field=name)
    if not 0.0 <= float(value) <= 1.0:
        raise ValidationError(f"{name} must be between 0.0 and 1.0", field=name)


@dataclass(frozen=True)
class Fingerprint:
    """
    Sign sketch of a canonical feature map.

    Parameters
    ----------
    bits : Tuple[int, ...]
        Fixed-size sequence of 0/1 sign bits.
    feature_count : int
        Number of named features summarized.
    layout : str
        Digest of the sorted feature names. Fingerprints with different
        layouts are never comparable.
    """

    bits: Tuple[int, ...]
    feature_count: int
    layout: str

    def __post_init__(self) -> None:
        if not self.bits:
            raise ValidationError("Fingerprint must contain at least one bit", field="bits")
        if any(bit not in (0, 1) or isinstance(bit, bool) for bit in self.bits):
            raise ValidationError("Fingerprint bits must be 0 or 1", field="bits")
        if self.feature_count < 1:
            raise ValidationError("feature_count must be positive", field="feature_count")
        if not self.layout:
            raise ValidationError("layout must be a non-empty string", field="layout")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bits": "".join(str(bit) for bit in self.bits),
            "feature_count": self.feature_count,
            "layout": self.layout,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Fingerprint":
        try:
            return cls(
                bits=tuple(int(bit) for bit in data["bits"]),
                feature_count=int(data["feature_count"]),
                layout=str(data["layout"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Malformed fingerprint: {e}", field="fingerprint") from e


@dataclass
class ExtractionResult:
    """
    Output of a pattern extractor.

    Parameters
    ----------
    features : Dict[str, float]
        Named feature values, each in [0, 1].
    quality_score : float
        Capture quality estimate in [0, 1].
    components : Dict[str, float], default_factory=dict
        Per-component quality scores, kept for diagnostics.
    """

    features: Dict[str, float]
    quality_score: float
    components: Dict[str, float] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.features, dict):
            raise ValidationError("features must be a mapping", field="features")
        for name, value in self.features.items():
            if not isinstance(name, str) or not name:
                raise ValidationError("feature names must be non-empty strings", field="features")
            _check_unit_interval(f"features[{name}]", value)
        _check_unit_interval("quality_score", self.quality_score)


@dataclass
class CaptureSession:
    """
    A pending capture waiting for ``complete_capture``.

    Parameters
    ----------
    token : str
        Opaque single-use bearer token.
    identity_ref : str
        Identity that signed the capture.
    modality : str
        Modality tag of the capture.
    features : Dict[str, float]
        Canonical feature map. Never persisted.
    fingerprint : Fingerprint
        Summary derived from ``features``.
    quality_score : float
        Capture quality in [0, 1].
    created_at : float
        Epoch seconds when the session was created.
    expires_at : float
        Epoch seconds after which the session is unusable.
    state : SessionState, default=SessionState.PENDING
        Protocol state.
    """

    token: str
    identity_ref: str
    modality: str
    features: Dict[str, float]
    fingerprint: Fingerprint
    quality_score: float
    created_at: float
    expires_at: float
    state: SessionState = SessionState.PENDING

    def __post_init__(self) -> None:
        if not self.token:
            raise ValidationError("token must be a non-empty string", field="token")
        if self.expires_at <= self.created_at:
            raise ValidationError("expires_at must be after created_at", field="expires_at")
        _check_unit_interval("quality_score", self.quality_score)

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def transition(self, target: SessionState) -> None:
        self.state = advance(self.state, target)

    def to_dict(self) -> Dict[str, Any]:
        """Serializable view without the token or feature values."""
        return {
            "identity_ref": self.identity_ref,
            "modality": self.modality,
            "feature_count": len(self.features),
            "quality_score": self.quality_score,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "state": self.state.value,
        }


@dataclass
class Credential:
    """
    Durable, one-way-hashed binding between an identity and a modality.

    Parameters
    ----------
    id : str
        Credential identifier.
    identity_ref : str
        Owning identity.
    modality : str
        Modality tag.
    commitment_hash : str
        Hex Argon2id digest of the canonical feature map.
    commitment_salt : str
        Hex salt used for the commitment.
    fingerprint : Fingerprint
        Summary used for pre-filtering and similarity.
    quality_score : float
        Quality of the enrolment capture.
    created_at : datetime
        When the credential was registered.
    verification_count : int, default=0
        Verification attempts that reached this credential.
    successful_verifications : int, default=0
        Attempts that matched.
    last_verified_at : datetime, optional
        Time of the last successful verification.
    last_similarity_score : float, optional
        Similarity of the last successful verification.
    active : bool, default=True
        False once deactivated; records are never deleted.
    deactivated_at : datetime, optional
        When the credential was deactivated.
    deactivation_reason : DeactivationReason, optional
        Why the credential was deactivated.
    """

    id: str
    identity_ref: str
    modality: str
    commitment_hash: str
    commitment_salt: str
    fingerprint: Fingerprint
    quality_score: float
    created_at: datetime
    verification_count: int = 0
    successful_verifications: int = 0
    last_verified_at: Optional[datetime] = None
    last_similarity_score: Optional[float] = None
    active: bool = True
    deactivated_at: Optional[datetime] = None
    deactivation_reason: Optional[DeactivationReason] = None

    def __post_init__(self) -> None:
        _check_unit_interval("quality_score", self.quality_score)
        if self.last_similarity_score is not None:
            _check_unit_interval("last_similarity_score", self.last_similarity_score)
        if self.successful_verifications > self.verification_count:
            raise ValidationError(
                "successful_verifications cannot exceed verification_count",
                field="successful_verifications",
            )
        if self.active and self.deactivation_reason is not None:
            raise ValidationError(
                "An active credential cannot carry a deactivation reason",
                field="deactivation_reason",
            )

    @property
    def success_rate(self) -> float:
        if self.verification_count == 0:
            return 0.0
        return self.successful_verifications / self.verification_count

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert the credential to a dictionary for audit listings.

        Commitment material (hash and salt) is omitted.

        Returns
        -------
        Dict[str, Any]
            Dictionary representation of the credential.
        """
        return {
            "id": self.id,
            "identity_ref": self.identity_ref,
            "modality": self.modality,
            "quality_score": self.quality_score,
            "created_at": self.created_at.isoformat(),
            "verification_count": self.verification_count,
            "successful_verifications": self.successful_verifications,
            "success_rate": self.success_rate,
            "last_verified_at": (
                self.last_verified_at.isoformat() if self.last_verified_at else None
            ),
            "last_similarity_score": self.last_similarity_score,
            "active": self.active,
            "deactivated_at": (
                self.deactivated_at.isoformat() if self.deactivated_at else None
            ),
            "deactivation_reason": (
                self.deactivation_reason.value if self.deactivation_reason else None
            ),
        }


@dataclass
class VerificationResult:
    """
    Result of a successful ``complete_capture``.

    Parameters
    ----------
    outcome : Outcome
        What happened.
    credential_id : str
        Credential created or matched.
    similarity : float, optional
        Similarity for ``VERIFIED`` outcomes.
    verification_score : float, optional
        Score recomputed after the operation, in [0, 100].
    """

    outcome: Outcome
    credential_id: str
    similarity: Optional[float] = None
    verification_score: Optional[float] = None

    def __post_init__(self) -> None:
        if self.similarity is not None:
            _check_unit_interval("similarity", self.similarity)
        if self.verification_score is not None and not (
            0.0 <= self.verification_score <= SCORE_MAX
        ):
            raise ValidationError(
                "verification_score must be between 0 and 100", field="verification_score"
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "credential_id": self.credential_id,
            "similarity": self.similarity,
            "verification_score": self.verification_score,
        }


def utc_from_epoch(seconds: Optional[float]) -> Optional[datetime]:
    """Convert epoch seconds to an aware UTC datetime (``None`` passes through)."""
    if seconds is None:
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc)
