"""
Purpose-bound signature verification for the HUMANITAS ID system.

Every protocol step is gated by an Ed25519 signature from the identity key
over ``HUMANITAS-ID|v1|<purpose>|<subject>``. Binding the purpose and the
subject (identity, session token or identity/modality pair) means a
signature produced for one step cannot be replayed for another.

Identity keys are hex-encoded raw 32-byte Ed25519 public keys; signatures
are hex-encoded 64-byte Ed25519 signatures.
"""

import re

import structlog
from cryptography.exceptions import InvalidSignature as _CryptoInvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from .constants import (
    ED25519_PUBLIC_KEY_BYTES,
    ED25519_SIGNATURE_BYTES,
    SIGNATURE_DOMAIN,
    SIGNATURE_PURPOSES,
)
from .exceptions import InvalidSignature, ValidationError
from .utils import log_security_event

# Initialize structured logger
logger = structlog.get_logger(__name__)

_IDENTITY_KEY_RE = re.compile(rf"^[0-9a-f]{{{ED25519_PUBLIC_KEY_BYTES * 2}}}$")


def validate_identity_ref(identity_ref: str) -> str:
    """
    Check that an identity reference is a well-formed public key.

    Parameters
    ----------
    identity_ref : str
        Hex-encoded Ed25519 public key.

    Returns
    -------
    str
        The lower-cased identity reference.

    Raises
    ------
    ValidationError
        If the value is not 64 hex characters.
    """
    if not isinstance(identity_ref, str):
        raise ValidationError("identity_ref must be a string", field="identity_ref")
    normalized = identity_ref.strip().lower()
    if not _IDENTITY_KEY_RE.match(normalized):
        raise ValidationError(
            "identity_ref must be a hex-encoded 32-byte Ed25519 public key",
            field="identity_ref",
        )
    return normalized


def build_message(purpose: str, subject: str) -> bytes:
    """
    Build the signed message for a protocol step.

    Parameters
    ----------
    purpose : str
        One of the signature purposes (capture, register, verify, update,
        removal).
    subject : str
        What the step acts on.

    Returns
    -------
    bytes
        Message bytes.

    Raises
    ------
    ValidationError
        If the purpose is unknown or the subject is empty.

    Examples
    --------
    >>> build_message("verify", "tok")
    b'HUMANITAS-ID|v1|verify|tok'
    """
    if purpose not in SIGNATURE_PURPOSES:
        raise ValidationError(f"Unknown signature purpose '{purpose}'", field="purpose")
    if not subject:
        raise ValidationError("Signature subject cannot be empty", field="subject")
    return f"{SIGNATURE_DOMAIN}|{purpose}|{subject}".encode("utf-8")


def sign_message(private_key: Ed25519PrivateKey, purpose: str, subject: str) -> str:
    """
    Produce the hex signature a client sends for a protocol step.

    Parameters
    ----------
    private_key : Ed25519PrivateKey
        The identity's signing key.
    purpose : str
        Signature purpose.
    subject : str
        Step subject.

    Returns
    -------
    str
        Hex-encoded signature.
    """
    return private_key.sign(build_message(purpose, subject)).hex()


def public_key_hex(private_key: Ed25519PrivateKey) -> str:
    """Identity reference for a private key."""
    raw = private_key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
    return raw.hex()


class SignatureGate:
    """
    Verifies purpose-bound Ed25519 signatures.

    Failures are never retried and are always logged as security events
    with identity and purpose only.
    """

    def verify(self, identity_ref: str, purpose: str, subject: str, signature: str) -> bool:
        """
        Check a signature.

        Parameters
        ----------
        identity_ref : str
            Hex public key of the signer.
        purpose : str
            Signature purpose.
        subject : str
            Step subject.
        signature : str
            Hex-encoded signature.

        Returns
        -------
        bool
            True when the signature is valid for this purpose and subject.
        """
        message = build_message(purpose, subject)

        try:
            key_bytes = bytes.fromhex(identity_ref)
            sig_bytes = bytes.fromhex(signature) if isinstance(signature, str) else b""
        except ValueError:
            key_bytes, sig_bytes = b"", b""

        valid = False
        if (
            len(key_bytes) == ED25519_PUBLIC_KEY_BYTES
            and len(sig_bytes) == ED25519_SIGNATURE_BYTES
        ):
            try:
                Ed25519PublicKey.from_public_bytes(key_bytes).verify(sig_bytes, message)
                valid = True
            except (_CryptoInvalidSignature, ValueError):
                valid = False

        if not valid:
            log_security_event("invalid_signature", identity_ref, purpose=purpose)
        else:
            logger.debug("Signature verified", identity_ref=identity_ref, purpose=purpose)

        return valid

    def require(self, identity_ref: str, purpose: str, subject: str, signature: str) -> None:
        """
        Verify a signature or raise.

        Raises
        ------
        InvalidSignature
            If the signature does not verify.
        """
        if not self.verify(identity_ref, purpose, subject, signature):
            raise InvalidSignature(identity_ref, purpose)
