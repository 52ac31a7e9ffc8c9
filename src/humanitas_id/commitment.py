"""
One-way feature commitments for the HUMANITAS ID system.

A commitment is an Argon2id digest over the canonical encoding of a feature
map, bound to the identity and modality it was enrolled for. The raw
features cannot be recovered from it, and each credential uses its own
random salt so equal patterns enrolled twice never share a digest.

Because the encoding is canonical (key-sorted, fixed precision), the same
logical pattern always produces the same digest under the same salt.
"""

import hmac
import secrets
from typing import Mapping, Optional, Tuple

import structlog
from argon2.exceptions import Argon2Error
from argon2.low_level import Type, hash_secret_raw

from . import config
from .constants import ARGON2_HASH_LENGTH, ARGON2_SALT_LENGTH
from .exceptions import CommitmentError
from .normalization import canonical_json
from .utils import timer

# Initialize structured logger
logger = structlog.get_logger(__name__)


class CommitmentScheme:
    """
    Argon2id commitment over canonical feature maps.

    Parameters
    ----------
    time_cost : int, default=config.ARGON2_TIME_COST
        Number of Argon2 iterations.
    memory_cost : int, default=config.ARGON2_MEMORY_COST
        Memory usage in KB.
    parallelism : int, default=config.ARGON2_PARALLELISM
        Number of lanes.
    hash_length : int, default=ARGON2_HASH_LENGTH
        Digest length in bytes.
    salt_length : int, default=ARGON2_SALT_LENGTH
        Salt length in bytes.

    Examples
    --------
    >>> scheme = CommitmentScheme(time_cost=1, memory_cost=1024)
    >>> digest, salt = scheme.commit("ab" * 32, "facial", {"x": 0.5})
    >>> scheme.matches("ab" * 32, "facial", {"x": 0.5}, digest, salt)
    True
    """

    def __init__(
        self,
        time_cost: Optional[int] = None,
        memory_cost: Optional[int] = None,
        parallelism: Optional[int] = None,
        hash_length: int = ARGON2_HASH_LENGTH,
        salt_length: int = ARGON2_SALT_LENGTH,
    ) -> None:
        self.time_cost = config.ARGON2_TIME_COST if time_cost is None else time_cost
        self.memory_cost = config.ARGON2_MEMORY_COST if memory_cost is None else memory_cost
        self.parallelism = config.ARGON2_PARALLELISM if parallelism is None else parallelism
        self.hash_length = hash_length
        self.salt_length = salt_length

        self._validate_parameters()

        logger.info(
            "CommitmentScheme initialized",
            time_cost=self.time_cost,
            memory_cost=self.memory_cost,
            parallelism=self.parallelism,
            hash_length=self.hash_length,
        )

    def _validate_parameters(self) -> None:
        """
        Validate Argon2 parameters for security and feasibility.

        Raises
        ------
        CommitmentError
            If any parameters are invalid.
        """
        if self.time_cost < 1:
            raise CommitmentError(f"time_cost must be at least 1, got {self.time_cost}")

        if self.memory_cost < 8 * self.parallelism:
            raise CommitmentError(
                f"memory_cost must be at least {8 * self.parallelism} KB, got {self.memory_cost}"
            )

        if self.parallelism < 1:
            raise CommitmentError(f"parallelism must be at least 1, got {self.parallelism}")

        if self.hash_length < 16:  # Minimum 128 bits
            raise CommitmentError(f"hash_length must be at least 16 bytes, got {self.hash_length}")

        if self.salt_length < 8:  # Minimum 64 bits
            raise CommitmentError(f"salt_length must be at least 8 bytes, got {self.salt_length}")

    def new_salt(self) -> bytes:
        return secrets.token_bytes(self.salt_length)

    @staticmethod
    def _secret(identity_ref: str, modality: str, features: Mapping[str, float]) -> bytes:
        return "\n".join([identity_ref, modality, canonical_json(features)]).encode("utf-8")

    @timer
    def digest(
        self,
        identity_ref: str,
        modality: str,
        features: Mapping[str, float],
        salt: bytes,
    ) -> str:
        """
        Compute the commitment digest under a given salt.

        Parameters
        ----------
        identity_ref : str
            Owning identity.
        modality : str
            Modality tag.
        features : Mapping[str, float]
            Canonical features.
        salt : bytes
            Credential salt.

        Returns
        -------
        str
            Hex-encoded digest.

        Raises
        ------
        CommitmentError
            If the salt has the wrong length or Argon2 fails.
        """
        if len(salt) != self.salt_length:
            raise CommitmentError(
                f"Salt must be {self.salt_length} bytes, got {len(salt)}"
            )

        try:
            raw = hash_secret_raw(
                secret=self._secret(identity_ref, modality, features),
                salt=salt,
                time_cost=self.time_cost,
                memory_cost=self.memory_cost,
                parallelism=self.parallelism,
                hash_len=self.hash_length,
                type=Type.ID,
            )
        except Argon2Error as e:
            raise CommitmentError(f"Argon2 hashing failed: {e}") from e

        return raw.hex()

    def commit(
        self, identity_ref: str, modality: str, features: Mapping[str, float]
    ) -> Tuple[str, bytes]:
        """
        Commit to a feature map under a fresh random salt.

        Returns
        -------
        Tuple[str, bytes]
            Hex digest and the salt used.
        """
        salt = self.new_salt()
        digest = self.digest(identity_ref, modality, features, salt)

        logger.debug(
            "Commitment generated",
            modality=modality,
            feature_count=len(features),
        )
        return digest, salt

    def matches(
        self,
        identity_ref: str,
        modality: str,
        features: Mapping[str, float],
        expected_digest: str,
        salt: bytes,
    ) -> bool:
        """
        Check a candidate feature map against a stored commitment.

        The digests are compared in constant time.
        """
        computed = self.digest(identity_ref, modality, features, salt)
        return hmac.compare_digest(computed, expected_digest)
