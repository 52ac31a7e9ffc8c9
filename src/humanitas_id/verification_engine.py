"""
Register and verify decisions for the HUMANITAS ID system.

``VerificationEngine`` holds the protocol policy and nothing else. It talks
to storage, the rate limiter, the fingerprint index and the commitment
scheme only through the objects it is given, and reads time only from its
injected clock, so every decision can be unit-tested with in-memory
collaborators.

Verification steps:

1. look up the active credential (``NotRegistered`` if absent);
2. refuse limited identities (``RateLimited``);
3. fast-reject on fingerprint similarity below the fast-reject threshold,
   without computing the commitment;
4. accept on commitment equality (similarity 1.0) or on fingerprint
   similarity at or above the quality floor, reported as at most
   ``MAX_APPROXIMATE_SIMILARITY``;
5. on success update counters, clear the failure ledger and recompute the
   verification score.

Every rejection in steps 3 and 4 is journaled against the credential,
counted by the rate limiter and reported as ``Mismatch`` without the
similarity value.
"""

from typing import List, Mapping, Optional

import structlog

from . import config
from .commitment import CommitmentScheme
from .constants import (
    MAX_APPROXIMATE_SIMILARITY,
    SCORE_CONSISTENCY_BASELINE,
    SCORE_CONSISTENCY_WEIGHT,
    SCORE_FAILURE_PENALTY,
    SCORE_FAILURE_WINDOW_SECONDS,
    SCORE_MAX,
    SCORE_RECENCY_DAYS,
)
from .credential_store import CredentialStore, DuplicateGuard
from .data_models import (
    Credential,
    DeactivationReason,
    Fingerprint,
    Outcome,
    VerificationResult,
)
from .exceptions import (
    AlreadyRegistered,
    DuplicatePattern,
    Mismatch,
    NotRegistered,
    QualityTooLow,
)
from .fingerprint_index import FingerprintIndex
from .rate_limiter import RateLimiter
from .utils import Clock, clamp, log_security_event, safe_divide, system_clock, timer

# Initialize structured logger
logger = structlog.get_logger(__name__)

SECONDS_PER_DAY = 86400.0


class VerificationEngine:
    """
    Protocol policy for registering, updating and verifying credentials.

    Parameters
    ----------
    store : CredentialStore
        Credential persistence port.
    rate_limiter : RateLimiter
        Failure limiter keyed by identity.
    fingerprint_index : FingerprintIndex, optional
        Fingerprint comparator.
    commitment : CommitmentScheme, optional
        Commitment scheme.
    clock : Callable[[], float], default=system_clock
        Source of epoch seconds.
    quality_floor : float, optional
        Minimum quality at registration and minimum match similarity.
    fast_reject_threshold : float, optional
        Fingerprint similarity below which verification stops early.
    duplicate_check : bool, optional
        Reject patterns already enrolled by another identity.
    duplicate_threshold : float, optional
        Fingerprint similarity treated as the same pattern.
    """

    def __init__(
        self,
        store: CredentialStore,
        rate_limiter: RateLimiter,
        fingerprint_index: Optional[FingerprintIndex] = None,
        commitment: Optional[CommitmentScheme] = None,
        clock: Clock = system_clock,
        quality_floor: Optional[float] = None,
        fast_reject_threshold: Optional[float] = None,
        duplicate_check: Optional[bool] = None,
        duplicate_threshold: Optional[float] = None,
    ) -> None:
        self.store = store
        self.rate_limiter = rate_limiter
        self.fingerprint_index = fingerprint_index or FingerprintIndex()
        self.commitment = commitment or CommitmentScheme()
        self._clock = clock
        self.quality_floor = config.QUALITY_FLOOR if quality_floor is None else quality_floor
        self.fast_reject_threshold = (
            config.FAST_REJECT_THRESHOLD
            if fast_reject_threshold is None
            else fast_reject_threshold
        )
        self.duplicate_check = (
            config.ENABLE_DUPLICATE_PATTERN_CHECK if duplicate_check is None else duplicate_check
        )
        self.duplicate_threshold = (
            config.DUPLICATE_PATTERN_THRESHOLD
            if duplicate_threshold is None
            else duplicate_threshold
        )

    # ------------------------------------------------------------------
    # Enrolment
    # ------------------------------------------------------------------

    def _check_quality(self, modality: str, quality_score: float) -> None:
        if quality_score < self.quality_floor:
            raise QualityTooLow(quality_score, self.quality_floor, modality)

    def _duplicate_guard(self, fingerprint: Fingerprint) -> Optional[DuplicateGuard]:
        if not self.duplicate_check:
            return None

        def is_duplicate(existing: Fingerprint) -> bool:
            similarity = self.fingerprint_index.compare(existing, fingerprint)
            return similarity >= self.duplicate_threshold

        return is_duplicate

    @timer
    def register(
        self,
        identity_ref: str,
        modality: str,
        features: Mapping[str, float],
        fingerprint: Fingerprint,
        quality_score: float,
    ) -> VerificationResult:
        """
        Bind a new credential to (identity, modality).

        Parameters
        ----------
        identity_ref : str
            Owning identity.
        modality : str
            Modality tag.
        features : Mapping[str, float]
            Canonical features of the capture.
        fingerprint : Fingerprint
            Fingerprint of ``features``.
        quality_score : float
            Capture quality.

        Returns
        -------
        VerificationResult
            ``REGISTERED`` outcome with the new credential id.

        Raises
        ------
        QualityTooLow
            If the capture is below the quality floor.
        AlreadyRegistered
            If an active credential exists; the store enforces this under
            concurrency as well.
        DuplicatePattern
            If another identity already enrolled the same pattern.
        """
        self._check_quality(modality, quality_score)

        if self.store.find(identity_ref, modality) is not None:
            log_security_event("already_registered", identity_ref, modality=modality)
            raise AlreadyRegistered(identity_ref, modality)

        digest, salt = self.commitment.commit(identity_ref, modality, features)
        try:
            credential_id = self.store.register(
                identity_ref,
                modality,
                digest,
                salt.hex(),
                fingerprint,
                quality_score,
                self._clock(),
                duplicate_of=self._duplicate_guard(fingerprint),
            )
        except DuplicatePattern:
            log_security_event("duplicate_pattern", identity_ref, modality=modality)
            raise
        except AlreadyRegistered:
            log_security_event("already_registered", identity_ref, modality=modality)
            raise

        logger.info(
            "Credential registered",
            identity_ref=identity_ref,
            modality=modality,
            credential_id=credential_id,
            quality_score=quality_score,
        )

        return VerificationResult(
            outcome=Outcome.REGISTERED,
            credential_id=credential_id,
            verification_score=0.0,
        )

    @timer
    def update(
        self,
        identity_ref: str,
        modality: str,
        features: Mapping[str, float],
        fingerprint: Fingerprint,
        quality_score: float,
    ) -> VerificationResult:
        """
        Replace the active credential with a new capture.

        The old credential is deactivated with reason ``pattern_update`` in
        the same store transaction that creates the new one.

        Raises
        ------
        NotRegistered
            If there is no active credential to replace.
        DuplicatePattern
            If another identity already enrolled the same pattern.
        """
        self._check_quality(modality, quality_score)

        if self.store.find(identity_ref, modality) is None:
            raise NotRegistered(identity_ref, modality)

        digest, salt = self.commitment.commit(identity_ref, modality, features)
        try:
            old_id, new_id = self.store.replace_active(
                identity_ref,
                modality,
                digest,
                salt.hex(),
                fingerprint,
                quality_score,
                self._clock(),
                DeactivationReason.PATTERN_UPDATE,
                duplicate_of=self._duplicate_guard(fingerprint),
            )
        except DuplicatePattern:
            log_security_event("duplicate_pattern", identity_ref, modality=modality)
            raise

        logger.info(
            "Credential updated",
            identity_ref=identity_ref,
            modality=modality,
            previous_credential_id=old_id,
            credential_id=new_id,
        )

        return VerificationResult(
            outcome=Outcome.UPDATED,
            credential_id=new_id,
            verification_score=0.0,
        )

    def remove(
        self,
        identity_ref: str,
        modality: str,
        reason: DeactivationReason = DeactivationReason.USER_REQUESTED,
    ) -> List[str]:
        """
        Deactivate the active credential for (identity, modality).

        Returns
        -------
        List[str]
            Modalities still active for the identity.

        Raises
        ------
        NotRegistered
            If no active credential exists.
        """
        credential = self.store.find(identity_ref, modality)
        if credential is None or not self.store.deactivate(credential.id, reason, self._clock()):
            raise NotRegistered(identity_ref, modality)

        remaining = self.store.active_modalities(identity_ref)
        logger.info(
            "Credential deactivated",
            identity_ref=identity_ref,
            modality=modality,
            credential_id=credential.id,
            reason=DeactivationReason(reason).value,
            remaining_modalities=remaining,
        )
        return remaining

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def _reject(self, credential: Credential, stage: str) -> Mismatch:
        self.store.record_verification(credential.id, False, self._clock())
        failures = self.rate_limiter.record_failure(credential.identity_ref)
        log_security_event(
            "verification_mismatch",
            credential.identity_ref,
            modality=credential.modality,
            stage=stage,
            failures_in_window=failures,
        )
        return Mismatch(credential.identity_ref, credential.modality)

    @timer
    def verify(
        self,
        identity_ref: str,
        modality: str,
        features: Mapping[str, float],
        fingerprint: Fingerprint,
    ) -> VerificationResult:
        """
        Check a capture against the active credential.

        Parameters
        ----------
        identity_ref : str
            Claimed identity.
        modality : str
            Modality tag.
        features : Mapping[str, float]
            Canonical features of the capture.
        fingerprint : Fingerprint
            Fingerprint of ``features``.

        Returns
        -------
        VerificationResult
            ``VERIFIED`` outcome with similarity and updated score.

        Raises
        ------
        NotRegistered
            If no active credential exists.
        RateLimited
            If the identity has too many recent failures.
        Mismatch
            If the capture does not match.
        """
        credential = self.store.find(identity_ref, modality)
        if credential is None:
            raise NotRegistered(identity_ref, modality)

        self.rate_limiter.check(identity_ref)

        fingerprint_similarity = self.fingerprint_index.compare(
            credential.fingerprint, fingerprint
        )
        if fingerprint_similarity < self.fast_reject_threshold:
            raise self._reject(credential, "fast_reject")

        if self.commitment.matches(
            identity_ref,
            modality,
            features,
            credential.commitment_hash,
            bytes.fromhex(credential.commitment_salt),
        ):
            similarity = 1.0
        else:
            similarity = min(fingerprint_similarity, MAX_APPROXIMATE_SIMILARITY)

        if similarity < self.quality_floor:
            raise self._reject(credential, "similarity_floor")

        self.store.record_verification(credential.id, True, self._clock(), similarity)
        self.rate_limiter.clear(identity_ref)

        updated = self.store.get(credential.id) or credential
        score = self.compute_score(updated)

        logger.info(
            "Credential verified",
            identity_ref=identity_ref,
            modality=modality,
            credential_id=credential.id,
            exact_match=similarity == 1.0,
            verification_score=score,
        )

        return VerificationResult(
            outcome=Outcome.VERIFIED,
            credential_id=credential.id,
            similarity=similarity,
            verification_score=score,
        )

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def compute_score(self, credential: Credential, now: Optional[float] = None) -> float:
        """
        Explainable verification score in [0, 100].

        ``base = quality * 100 * successful / count`` (0 before any attempt),
        plus up to 10 points for recency (one lost per day since the last
        success), plus ``(last_similarity - 0.8) * 20`` when positive, minus
        5 per failure journaled in the last hour.

        Parameters
        ----------
        credential : Credential
            Credential to score.
        now : float, optional
            Epoch seconds; defaults to the engine clock.

        Returns
        -------
        float
            Score rounded to two decimals.
        """
        now = self._clock() if now is None else now

        base = (
            credential.quality_score
            * SCORE_MAX
            * safe_divide(credential.successful_verifications, credential.verification_count, 0.0)
        )

        recency = 0.0
        if credential.last_verified_at is not None:
            days = max(0.0, (now - credential.last_verified_at.timestamp()) / SECONDS_PER_DAY)
            recency = max(0.0, SCORE_RECENCY_DAYS - days)

        consistency = 0.0
        if credential.last_similarity_score is not None:
            consistency = max(
                0.0,
                (credential.last_similarity_score - SCORE_CONSISTENCY_BASELINE)
                * SCORE_CONSISTENCY_WEIGHT,
            )

        failures = self.store.count_failures_since(
            credential.id, now - SCORE_FAILURE_WINDOW_SECONDS
        )
        penalty = SCORE_FAILURE_PENALTY * failures

        return round(clamp(base + recency + consistency - penalty, 0.0, SCORE_MAX), 2)

    def identity_score(self, identity_ref: str) -> float:
        """Mean score over the identity's active credentials (0.0 when none)."""
        active = [c for c in self.store.list_credentials(identity_ref) if c.active]
        if not active:
            return 0.0
        now = self._clock()
        scores = [self.compute_score(c, now) for c in active]
        return round(sum(scores) / len(scores), 2)

    def prune(self, now: Optional[float] = None) -> int:
        """
        Drop failure records that no longer affect any decision.

        Journaled failures older than the score window and identities whose
        rate-limit entries have all expired are removed.

        Returns
        -------
        int
            Journal rows plus ledger identities removed.
        """
        now = self._clock() if now is None else now
        removed = self.store.prune_failures(now - SCORE_FAILURE_WINDOW_SECONDS)
        removed += self.rate_limiter.prune()
        if removed:
            logger.debug("Failure records pruned", removed=removed)
        return removed
