"""
Custom exception classes for the HUMANITAS ID system.

This module defines the error taxonomy of the identity-binding protocol.
Every exception carries a stable error code and a context dictionary so that
callers can map failures to transport responses and structured logs can
record them without ever including raw biometric payloads.
"""

from typing import Any, Dict, Optional


class HumanitasIdError(Exception):
    """
    Base exception class for all HUMANITAS ID related errors.

    Parameters
    ----------
    message : str
        Human-readable error message.
    context : dict, optional
        Additional context information about the error.
    error_code : str, optional
        Unique error code for programmatic handling.
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
    ) -> None:
        self.message = message
        self.context = context or {}
        self.error_code = error_code
        super().__init__(self.message)

    def __str__(self) -> str:
        """Return a formatted string representation of the error."""
        parts = [self.message]

        if self.error_code:
            parts.append(f"[Error Code: {self.error_code}]")

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            parts.append(f"[Context: {context_str}]")

        return " ".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert the exception to a dictionary for structured logging.

        Returns
        -------
        dict
            Dictionary representation of the exception.
        """
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "context": self.context,
        }


# =============================================================================
# Input Validation
# =============================================================================


class ValidationError(HumanitasIdError):
    """
    Exception raised for malformed input.

    Validation failures are rejected immediately and never retried.
    """

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        **kwargs,
    ) -> None:
        context = kwargs.get("context", {})
        if field:
            context["field"] = field

        super().__init__(message, context, kwargs.get("error_code", "VALIDATION_001"))


class UnknownIdentity(ValidationError):
    """Exception raised when the identity directory does not know the identity."""

    def __init__(self, identity_ref: str) -> None:
        super().__init__(
            "Identity is unknown or inactive",
            field="identity_ref",
            context={"identity_ref": identity_ref},
            error_code="VALIDATION_002",
        )


# =============================================================================
# Capture
# =============================================================================


class CaptureError(HumanitasIdError):
    """
    Exception raised while turning a raw payload into a pending capture.

    This includes unsupported modalities, payloads without enough signal and
    captures that fall below the quality floor.
    """

    def __init__(
        self,
        message: str,
        modality: Optional[str] = None,
        **kwargs,
    ) -> None:
        context = kwargs.get("context", {})
        if modality:
            context["modality"] = modality

        super().__init__(message, context, kwargs.get("error_code"))


class QualityTooLow(CaptureError):
    """
    Exception raised when a capture does not meet the quality floor.

    This is not a system error. The caller must recapture; the request is
    never retried automatically.
    """

    def __init__(self, quality_score: float, minimum_threshold: float, modality: str) -> None:
        message = (
            f"Capture quality {quality_score:.3f} is below the required "
            f"minimum of {minimum_threshold:.3f}"
        )
        context = {
            "quality_score": quality_score,
            "minimum_threshold": minimum_threshold,
        }
        super().__init__(
            message, modality=modality, context=context, error_code="CAPTURE_001"
        )


class UnsupportedModality(CaptureError):
    """Exception raised when no extractor is registered for a modality."""

    def __init__(self, modality: str) -> None:
        super().__init__(
            f"No pattern extractor registered for modality '{modality}'",
            modality=modality,
            error_code="CAPTURE_002",
        )


class InsufficientSignal(CaptureError):
    """Exception raised when a payload yields too few usable features."""

    def __init__(self, modality: str, feature_count: int, minimum_features: int) -> None:
        context = {"feature_count": feature_count, "minimum_features": minimum_features}
        super().__init__(
            f"Payload yielded {feature_count} features, at least {minimum_features} required",
            modality=modality,
            context=context,
            error_code="CAPTURE_003",
        )


# =============================================================================
# Authentication and Sessions
# =============================================================================


class InvalidSignature(HumanitasIdError):
    """
    Exception raised when a protocol signature does not verify.

    Always logged as a security event and never retried.
    """

    def __init__(self, identity_ref: str, purpose: str) -> None:
        context = {"identity_ref": identity_ref, "purpose": purpose}
        super().__init__("Signature verification failed", context, "AUTH_001")


class ExpiredOrUnknownSession(HumanitasIdError):
    """Exception raised when a session token was consumed, expired or never issued."""

    def __init__(self) -> None:
        # The token itself is a bearer secret and stays out of the context.
        super().__init__(
            "Session is expired or unknown; restart the capture", error_code="SESSION_001"
        )


# =============================================================================
# Credential State
# =============================================================================


class CredentialStateError(HumanitasIdError):
    """
    Exception raised when an operation conflicts with the credential state.
    """

    def __init__(
        self,
        message: str,
        identity_ref: Optional[str] = None,
        modality: Optional[str] = None,
        **kwargs,
    ) -> None:
        context = kwargs.get("context", {})
        if identity_ref:
            context["identity_ref"] = identity_ref
        if modality:
            context["modality"] = modality

        super().__init__(message, context, kwargs.get("error_code"))


class AlreadyRegistered(CredentialStateError):
    """Exception raised when an active credential already exists."""

    def __init__(self, identity_ref: str, modality: str, **kwargs) -> None:
        super().__init__(
            kwargs.get("message", "An active credential already exists for this modality"),
            identity_ref=identity_ref,
            modality=modality,
            error_code=kwargs.get("error_code", "STATE_001"),
        )


class NotRegistered(CredentialStateError):
    """Exception raised when no active credential exists."""

    def __init__(self, identity_ref: str, modality: str) -> None:
        super().__init__(
            "No active credential exists for this modality",
            identity_ref=identity_ref,
            modality=modality,
            error_code="STATE_002",
        )


class DuplicatePattern(AlreadyRegistered):
    """
    Exception raised when a pattern is already enrolled under another identity.

    The conflicting identity is never disclosed.
    """

    def __init__(self, identity_ref: str, modality: str) -> None:
        super().__init__(
            identity_ref,
            modality,
            message="This pattern is already bound to another identity",
            error_code="STATE_003",
        )


# =============================================================================
# Verification Policy
# =============================================================================


class RateLimited(HumanitasIdError):
    """
    Exception raised when an identity has too many recent failures.

    Parameters
    ----------
    identity_ref : str
        Identity being limited.
    retry_after_seconds : float
        Time until the caller may try again.
    """

    def __init__(self, identity_ref: str, retry_after_seconds: float) -> None:
        self.retry_after_seconds = max(0.0, float(retry_after_seconds))
        context = {
            "identity_ref": identity_ref,
            "retry_after_seconds": round(self.retry_after_seconds, 3),
        }
        super().__init__("Too many failed attempts", context, "LIMIT_001")


class Mismatch(HumanitasIdError):
    """
    Exception raised when a candidate pattern does not match the credential.

    The similarity value is never included.
    """

    def __init__(self, identity_ref: str, modality: str) -> None:
        context = {"identity_ref": identity_ref, "modality": modality}
        super().__init__("Pattern does not match", context, "VERIFY_001")


# =============================================================================
# Infrastructure
# =============================================================================


class StorageError(HumanitasIdError):
    """
    Exception raised when the credential store fails.

    Parameters
    ----------
    message : str
        Human-readable error message.
    operation : str, optional
        Store operation that failed.
    retriable : bool
        Whether the failure is transient (e.g. a locked database).
    """

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        retriable: bool = True,
        **kwargs,
    ) -> None:
        self.retriable = retriable
        context = kwargs.get("context", {})
        if operation:
            context["operation"] = operation
        context["retriable"] = retriable

        super().__init__(message, context, kwargs.get("error_code", "STORAGE_001"))


class CommitmentError(HumanitasIdError):
    """Exception raised when computing a feature commitment fails."""

    def __init__(self, message: str, algorithm: str = "argon2id") -> None:
        super().__init__(message, {"hashing_algorithm": algorithm}, "CRYPTO_001")


class ConfigurationError(HumanitasIdError):
    """
    Exception raised for configuration-related errors.

    This includes invalid configuration values, missing required
    environment variables, or configuration conflicts.
    """

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        config_value: Optional[str] = None,
        **kwargs,
    ) -> None:
        context = kwargs.get("context", {})
        if config_key:
            context["config_key"] = config_key
        if config_value:
            context["config_value"] = config_value

        super().__init__(message, context, kwargs.get("error_code", "CONFIG_001"))
