"""
Transport-agnostic identity-binding service.

``IdentityBindingService`` wires the protocol components together and
exposes the four public operations plus the audit listing:

- ``begin_capture(identity_ref, modality, raw_payload, signature)``
- ``complete_capture(session_token, action, signature)``
- ``get_status(identity_ref)``
- ``remove_credential(identity_ref, modality, signature)``
- ``list_credentials(identity_ref)``

Results are plain dictionaries so any HTTP or RPC layer can serialize them
directly. Failures are raised as ``HumanitasIdError`` subclasses carrying
stable error codes.
"""

from typing import Any, Dict, List, Optional

import structlog

from . import config
from .constants import PURPOSE_CAPTURE, PURPOSE_REMOVAL
from .credential_store import CredentialStore, SQLiteCredentialStore
from .data_models import Action, CaptureSession, DeactivationReason, Outcome, SessionState
from .exceptions import (
    HumanitasIdError,
    InvalidSignature,
    QualityTooLow,
    UnknownIdentity,
    ValidationError,
)
from .extractors import ExtractorRegistry, default_registry
from .fingerprint_index import FingerprintIndex
from .integrations import (
    EVENT_CREDENTIAL_REGISTERED,
    EVENT_CREDENTIAL_REMOVED,
    EVENT_CREDENTIAL_UPDATED,
    EventSink,
    IdentityDirectory,
    LoggingEventSink,
    OpenIdentityDirectory,
)
from .rate_limiter import RateLimiter
from .session_cache import InMemorySessionCache, SessionCache, SessionSweeper
from .signature_gate import SignatureGate, validate_identity_ref
from .utils import Clock, log_security_event, system_clock
from .verification_engine import VerificationEngine

# Initialize structured logger
logger = structlog.get_logger(__name__)

_OUTCOME_STATES = {
    Outcome.REGISTERED: SessionState.REGISTERED,
    Outcome.UPDATED: SessionState.REGISTERED,
    Outcome.VERIFIED: SessionState.VERIFIED,
}


def _validate_modality(modality: Any) -> str:
    if not isinstance(modality, str) or not modality.strip():
        raise ValidationError("modality must be a non-empty string", field="modality")
    return modality.strip().lower()


class IdentityBindingService:
    """
    Entry point of the identity-binding protocol.

    Every collaborator can be injected; anything omitted is built from
    ``config``.

    Parameters
    ----------
    store : CredentialStore, optional
        Credential store. Defaults to a ``SQLiteCredentialStore`` at
        ``config.DB_PATH``.
    registry : ExtractorRegistry, optional
        Pattern extractors. Defaults to ``default_registry()``.
    session_cache : SessionCache, optional
        Pending captures. Defaults to an ``InMemorySessionCache``.
    rate_limiter : RateLimiter, optional
        Failure limiter. Defaults to an in-memory ledger.
    engine : VerificationEngine, optional
        Decision engine. Built over ``store`` and ``rate_limiter`` when
        omitted.
    signature_gate : SignatureGate, optional
        Signature verifier.
    directory : IdentityDirectory, optional
        Identity lookup. Defaults to ``OpenIdentityDirectory``.
    event_sink : EventSink, optional
        Domain event receiver. Defaults to ``LoggingEventSink``.
    clock : Callable[[], float], default=system_clock
        Source of epoch seconds for components built here.
    sweep_interval_seconds : float, optional
        Interval of the background sweeper, which also prunes stale failure
        records.

    Examples
    --------
    >>> with IdentityBindingService() as service:  # doctest: +SKIP
    ...     started = service.begin_capture(identity, "facial", payload, signature)
    """

    def __init__(
        self,
        store: Optional[CredentialStore] = None,
        registry: Optional[ExtractorRegistry] = None,
        session_cache: Optional[SessionCache] = None,
        rate_limiter: Optional[RateLimiter] = None,
        engine: Optional[VerificationEngine] = None,
        signature_gate: Optional[SignatureGate] = None,
        directory: Optional[IdentityDirectory] = None,
        event_sink: Optional[EventSink] = None,
        clock: Clock = system_clock,
        sweep_interval_seconds: Optional[float] = None,
    ) -> None:
        self.store = store if store is not None else SQLiteCredentialStore(config.DB_PATH)
        self.registry = registry if registry is not None else default_registry()
        self.session_cache = (
            session_cache if session_cache is not None else InMemorySessionCache(clock=clock)
        )
        self.rate_limiter = rate_limiter if rate_limiter is not None else RateLimiter(clock=clock)
        self.fingerprint_index = engine.fingerprint_index if engine else FingerprintIndex()
        self.engine = engine or VerificationEngine(
            self.store,
            self.rate_limiter,
            fingerprint_index=self.fingerprint_index,
            clock=clock,
        )
        self.signature_gate = signature_gate or SignatureGate()
        self.directory = directory or OpenIdentityDirectory()
        self.event_sink = event_sink or LoggingEventSink()
        self.quality_floor = self.engine.quality_floor
        self.sweeper = SessionSweeper(
            self.session_cache, sweep_interval_seconds, tasks=(self.engine.prune,)
        )

        logger.info(
            "IdentityBindingService initialized",
            store=type(self.store).__name__,
            modalities=self.registry.modalities(),
            quality_floor=self.quality_floor,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> "IdentityBindingService":
        """Start the background session sweeper."""
        self.sweeper.start()
        return self

    def close(self) -> None:
        """Stop the sweeper and release the store."""
        self.sweeper.stop()
        self.store.close()

    def __enter__(self) -> "IdentityBindingService":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_known(self, identity_ref: str) -> None:
        if not self.directory.is_active(identity_ref):
            log_security_event("unknown_identity", identity_ref)
            raise UnknownIdentity(identity_ref)

    def _emit(self, name: str, payload: Dict[str, Any]) -> None:
        try:
            self.event_sink.emit(name, payload)
        except Exception as e:
            # Committed state is not rolled back on delivery failure.
            logger.error(
                "Event delivery failed",
                event_name=name,
                error=str(e),
                error_type=type(e).__name__,
            )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def begin_capture(
        self, identity_ref: str, modality: str, raw_payload: Any, signature: str
    ) -> Dict[str, Any]:
        """
        Extract a capture and hold it in a pending session.

        Parameters
        ----------
        identity_ref : str
            Hex Ed25519 public key of the caller.
        modality : str
            Modality tag of the payload.
        raw_payload : Any
            Modality-specific capture payload. Never logged or persisted.
        signature : str
            Signature for purpose ``capture`` over ``identity_ref``.

        Returns
        -------
        dict
            ``session_token`` and ``quality_score``.

        Raises
        ------
        ValidationError
            If the identity or modality is malformed.
        UnknownIdentity
            If the directory does not know the identity.
        InvalidSignature
            If the signature does not verify.
        UnsupportedModality, InsufficientSignal
            If extraction fails.
        QualityTooLow
            If the capture is below the quality floor.
        """
        identity_ref = validate_identity_ref(identity_ref)
        modality = _validate_modality(modality)
        self._require_known(identity_ref)

        self.signature_gate.require(identity_ref, PURPOSE_CAPTURE, identity_ref, signature)

        extraction = self.registry.extract(modality, raw_payload)
        if extraction.quality_score < self.quality_floor:
            logger.info(
                "Capture rejected for quality",
                identity_ref=identity_ref,
                modality=modality,
                quality_score=extraction.quality_score,
            )
            raise QualityTooLow(extraction.quality_score, self.quality_floor, modality)

        fingerprint = self.fingerprint_index.derive(extraction.features)
        token = self.session_cache.put(
            identity_ref,
            modality,
            extraction.features,
            fingerprint,
            extraction.quality_score,
        )

        logger.info(
            "Capture pending",
            identity_ref=identity_ref,
            modality=modality,
            quality_score=extraction.quality_score,
        )
        return {"session_token": token, "quality_score": extraction.quality_score}

    def complete_capture(self, session_token: str, action: Any, signature: str) -> Dict[str, Any]:
        """
        Consume a pending session and register, update or verify.

        The session is consumed before anything else, so a token can never
        be completed twice.

        Parameters
        ----------
        session_token : str
            Token returned by ``begin_capture``.
        action : Action or str
            ``register``, ``verify`` or ``update``.
        signature : str
            Signature for the action's purpose over ``session_token``.

        Returns
        -------
        dict
            ``outcome``, ``credential_id``, ``similarity`` (verify only) and
            ``verification_score``.

        Raises
        ------
        ValidationError
            If the action is unknown.
        ExpiredOrUnknownSession
            If the token was consumed, expired or never issued.
        InvalidSignature
            If the signature does not verify.
        AlreadyRegistered, DuplicatePattern, NotRegistered, RateLimited, Mismatch
            If the protocol policy rejects the request.
        """
        try:
            action = Action(action)
        except ValueError:
            raise ValidationError(f"Unknown action '{action}'", field="action") from None

        session = self.session_cache.take(session_token)

        try:
            if not self.signature_gate.verify(
                session.identity_ref, action.value, session_token, signature
            ):
                raise InvalidSignature(session.identity_ref, action.value)
            result = self._dispatch(action, session)
        except HumanitasIdError:
            session.transition(SessionState.REJECTED)
            raise

        session.transition(_OUTCOME_STATES[result.outcome])

        if result.outcome is Outcome.REGISTERED:
            self._emit(
                EVENT_CREDENTIAL_REGISTERED,
                {
                    "identity_ref": session.identity_ref,
                    "modality": session.modality,
                    "quality_score": session.quality_score,
                },
            )
        elif result.outcome is Outcome.UPDATED:
            self._emit(
                EVENT_CREDENTIAL_UPDATED,
                {
                    "identity_ref": session.identity_ref,
                    "modality": session.modality,
                    "quality_score": session.quality_score,
                },
            )

        return result.to_dict()

    def _dispatch(self, action: Action, session: CaptureSession):
        if action is Action.REGISTER:
            return self.engine.register(
                session.identity_ref,
                session.modality,
                session.features,
                session.fingerprint,
                session.quality_score,
            )
        if action is Action.UPDATE:
            return self.engine.update(
                session.identity_ref,
                session.modality,
                session.features,
                session.fingerprint,
                session.quality_score,
            )
        return self.engine.verify(
            session.identity_ref,
            session.modality,
            session.features,
            session.fingerprint,
        )

    def get_status(self, identity_ref: str) -> Dict[str, Any]:
        """
        Summarize an identity's active credentials.

        Returns
        -------
        dict
            ``has_credential``, ``modalities``, ``verification_score`` (mean
            over active credentials) and ``last_verified_at`` (ISO 8601 or
            None).
        """
        identity_ref = validate_identity_ref(identity_ref)
        active = [c for c in self.store.list_credentials(identity_ref) if c.active]

        verified = [c.last_verified_at for c in active if c.last_verified_at is not None]
        last_verified_at = max(verified).isoformat() if verified else None

        return {
            "has_credential": bool(active),
            "modalities": sorted(c.modality for c in active),
            "verification_score": self.engine.identity_score(identity_ref),
            "last_verified_at": last_verified_at,
        }

    def remove_credential(self, identity_ref: str, modality: str, signature: str) -> Dict[str, Any]:
        """
        Deactivate the identity's credential for a modality.

        The record is kept for the audit listing.

        Parameters
        ----------
        identity_ref : str
            Owning identity.
        modality : str
            Modality to remove.
        signature : str
            Signature for purpose ``removal`` over ``"<identity_ref>:<modality>"``.

        Returns
        -------
        dict
            ``remaining_modalities``.

        Raises
        ------
        InvalidSignature
            If the signature does not verify.
        NotRegistered
            If no active credential exists for the modality.
        """
        identity_ref = validate_identity_ref(identity_ref)
        modality = _validate_modality(modality)
        self._require_known(identity_ref)

        self.signature_gate.require(
            identity_ref, PURPOSE_REMOVAL, f"{identity_ref}:{modality}", signature
        )

        remaining = self.engine.remove(identity_ref, modality, DeactivationReason.USER_REQUESTED)

        self._emit(
            EVENT_CREDENTIAL_REMOVED,
            {
                "identity_ref": identity_ref,
                "modality": modality,
                "remaining_modalities": remaining,
            },
        )
        return {"remaining_modalities": remaining}

    def list_credentials(self, identity_ref: str) -> List[Dict[str, Any]]:
        """Audit listing of every credential, active or not, without commitment material."""
        identity_ref = validate_identity_ref(identity_ref)
        return [c.to_dict() for c in self.store.list_credentials(identity_ref)]
