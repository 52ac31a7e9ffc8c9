"""
Durable credential storage for the HUMANITAS ID system.

``CredentialStore`` is the persistence port used by the verification
engine. It only ever receives commitments and fingerprints; raw feature
values never reach it.

At most one active credential may exist per (identity, modality). Both
implementations enforce this inside the store itself so that two
concurrent registrations cannot both pass a check-then-insert:

- ``SQLiteCredentialStore`` declares a partial unique index on
  ``(identity_ref, modality) WHERE active = 1`` and writes inside
  ``BEGIN IMMEDIATE`` transactions;
- ``InMemoryCredentialStore`` checks and inserts under one lock.

The optional cross-identity duplicate scan runs inside the same lock or
transaction as the insert, so two identities enrolling one pattern at the
same time cannot both succeed.

Deactivation is always soft. Deactivated records stay available to the
audit listing and are never deleted.
"""

import json
import sqlite3
import threading
import uuid
from abc import ABC, abstractmethod
from contextlib import closing, contextmanager
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Tuple, Union

import structlog

from . import config
from .constants import SQLITE_BUSY_TIMEOUT_SECONDS
from .data_models import Credential, DeactivationReason, Fingerprint, utc_from_epoch
from .exceptions import AlreadyRegistered, DuplicatePattern, NotRegistered, StorageError
from .utils import retry

# Initialize structured logger
logger = structlog.get_logger(__name__)

# Decides whether a stored fingerprint is the same pattern as a new capture
DuplicateGuard = Callable[[Fingerprint], bool]


def new_credential_id() -> str:
    return uuid.uuid4().hex


class CredentialStore(ABC):
    """Persistence port for credentials and their failure journal."""

    @abstractmethod
    def register(
        self,
        identity_ref: str,
        modality: str,
        commitment_hash: str,
        commitment_salt: str,
        fingerprint: Fingerprint,
        quality_score: float,
        now: float,
        duplicate_of: Optional[DuplicateGuard] = None,
    ) -> str:
        """
        Insert a new active credential.

        Parameters
        ----------
        duplicate_of : Callable[[Fingerprint], bool], optional
            Applied, within the insert transaction, to the fingerprint of
            every active credential of the same modality held by another
            identity. Any hit aborts the insert.

        Returns
        -------
        str
            The new credential id.

        Raises
        ------
        AlreadyRegistered
            If an active credential exists for (identity, modality).
        DuplicatePattern
            If ``duplicate_of`` matches another identity's credential.
        StorageError
            If the backend fails.
        """

    @abstractmethod
    def find(self, identity_ref: str, modality: str) -> Optional[Credential]:
        """Active credential for (identity, modality), if any."""

    @abstractmethod
    def get(self, credential_id: str) -> Optional[Credential]:
        """Credential by id, active or not."""

    @abstractmethod
    def deactivate(self, credential_id: str, reason: DeactivationReason, now: float) -> bool:
        """Soft-delete a credential; False if it was not active."""

    @abstractmethod
    def replace_active(
        self,
        identity_ref: str,
        modality: str,
        commitment_hash: str,
        commitment_salt: str,
        fingerprint: Fingerprint,
        quality_score: float,
        now: float,
        reason: DeactivationReason = DeactivationReason.PATTERN_UPDATE,
        duplicate_of: Optional[DuplicateGuard] = None,
    ) -> Tuple[str, str]:
        """
        Deactivate the active credential and insert its replacement atomically.

        ``duplicate_of`` behaves as in ``register``.

        Returns
        -------
        Tuple[str, str]
            Old and new credential ids.

        Raises
        ------
        NotRegistered
            If no active credential exists.
        DuplicatePattern
            If ``duplicate_of`` matches another identity's credential.
        """

    @abstractmethod
    def record_verification(
        self,
        credential_id: str,
        success: bool,
        now: float,
        similarity: Optional[float] = None,
    ) -> None:
        """
        Count one verification attempt against a credential.

        Successful attempts also update ``last_verified_at`` and
        ``last_similarity_score``; failed attempts are added to the failure
        journal.
        """

    @abstractmethod
    def count_failures_since(self, credential_id: str, since: float) -> int:
        """Journaled failures for a credential at or after ``since``."""

    @abstractmethod
    def prune_failures(self, before: float) -> int:
        """Delete journaled failures older than ``before``; return how many."""

    @abstractmethod
    def list_credentials(self, identity_ref: str) -> List[Credential]:
        """Every credential of an identity, oldest first (audit listing)."""

    @abstractmethod
    def list_active(self, modality: Optional[str] = None) -> List[Credential]:
        """Active credentials, optionally for one modality."""

    def active_modalities(self, identity_ref: str) -> List[str]:
        return sorted(c.modality for c in self.list_credentials(identity_ref) if c.active)

    def close(self) -> None:
        """Release backend resources."""


# =============================================================================
# In-memory store
# =============================================================================


class InMemoryCredentialStore(CredentialStore):
    """
    Thread-safe in-process store, for tests and single-process deployments.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._credentials: Dict[str, Credential] = {}
        self._failures: List[Tuple[str, str, float]] = []

    def _active_id(self, identity_ref: str, modality: str) -> Optional[str]:
        for credential in self._credentials.values():
            if (
                credential.active
                and credential.identity_ref == identity_ref
                and credential.modality == modality
            ):
                return credential.id
        return None

    @staticmethod
    def _copy(credential: Credential) -> Credential:
        return Credential(**credential.__dict__)

    def _insert(self, identity_ref, modality, commitment_hash, commitment_salt,
                fingerprint, quality_score, now) -> str:
        credential = Credential(
            id=new_credential_id(),
            identity_ref=identity_ref,
            modality=modality,
            commitment_hash=commitment_hash,
            commitment_salt=commitment_salt,
            fingerprint=fingerprint,
            quality_score=quality_score,
            created_at=utc_from_epoch(now),
        )
        self._credentials[credential.id] = credential
        return credential.id

    def _check_duplicates(self, identity_ref, modality, duplicate_of) -> None:
        if duplicate_of is None:
            return
        for credential in self._credentials.values():
            if (
                credential.active
                and credential.modality == modality
                and credential.identity_ref != identity_ref
                and duplicate_of(credential.fingerprint)
            ):
                raise DuplicatePattern(identity_ref, modality)

    def register(self, identity_ref, modality, commitment_hash, commitment_salt,
                 fingerprint, quality_score, now, duplicate_of=None):
        with self._lock:
            if self._active_id(identity_ref, modality) is not None:
                raise AlreadyRegistered(identity_ref, modality)
            self._check_duplicates(identity_ref, modality, duplicate_of)
            return self._insert(identity_ref, modality, commitment_hash, commitment_salt,
                                fingerprint, quality_score, now)

    def find(self, identity_ref, modality):
        with self._lock:
            credential_id = self._active_id(identity_ref, modality)
            if credential_id is None:
                return None
            return self._copy(self._credentials[credential_id])

    def get(self, credential_id):
        with self._lock:
            credential = self._credentials.get(credential_id)
            return self._copy(credential) if credential else None

    def _deactivate(self, credential_id, reason, now) -> bool:
        credential = self._credentials.get(credential_id)
        if credential is None or not credential.active:
            return False
        credential.active = False
        credential.deactivated_at = utc_from_epoch(now)
        credential.deactivation_reason = DeactivationReason(reason)
        return True

    def deactivate(self, credential_id, reason, now):
        with self._lock:
            return self._deactivate(credential_id, reason, now)

    def replace_active(self, identity_ref, modality, commitment_hash, commitment_salt,
                       fingerprint, quality_score, now,
                       reason=DeactivationReason.PATTERN_UPDATE, duplicate_of=None):
        with self._lock:
            old_id = self._active_id(identity_ref, modality)
            if old_id is None:
                raise NotRegistered(identity_ref, modality)
            self._check_duplicates(identity_ref, modality, duplicate_of)
            self._deactivate(old_id, reason, now)
            new_id = self._insert(identity_ref, modality, commitment_hash, commitment_salt,
                                  fingerprint, quality_score, now)
            return old_id, new_id

    def record_verification(self, credential_id, success, now, similarity=None):
        with self._lock:
            credential = self._credentials.get(credential_id)
            if credential is None:
                raise StorageError(
                    "Credential not found", operation="record_verification", retriable=False
                )
            credential.verification_count += 1
            if success:
                credential.successful_verifications += 1
                credential.last_verified_at = utc_from_epoch(now)
                credential.last_similarity_score = similarity
            else:
                self._failures.append((credential_id, credential.identity_ref, now))

    def count_failures_since(self, credential_id, since):
        with self._lock:
            return sum(1 for cid, _, t in self._failures if cid == credential_id and t >= since)

    def prune_failures(self, before):
        with self._lock:
            kept = [entry for entry in self._failures if entry[2] >= before]
            removed = len(self._failures) - len(kept)
            self._failures = kept
            return removed

    def list_credentials(self, identity_ref):
        with self._lock:
            found = [c for c in self._credentials.values() if c.identity_ref == identity_ref]
            return [self._copy(c) for c in sorted(found, key=lambda c: c.created_at)]

    def list_active(self, modality=None):
        with self._lock:
            return [
                self._copy(c)
                for c in self._credentials.values()
                if c.active and (modality is None or c.modality == modality)
            ]


# =============================================================================
# SQLite store
# =============================================================================

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS credentials (
      id TEXT PRIMARY KEY,
      identity_ref TEXT NOT NULL,
      modality TEXT NOT NULL,
      commitment_hash TEXT NOT NULL,
      commitment_salt TEXT NOT NULL,
      fingerprint TEXT NOT NULL,
      quality_score REAL NOT NULL,
      created_at REAL NOT NULL,
      verification_count INTEGER NOT NULL DEFAULT 0,
      successful_verifications INTEGER NOT NULL DEFAULT 0,
      last_verified_at REAL,
      last_similarity_score REAL,
      active INTEGER NOT NULL DEFAULT 1,
      deactivated_at REAL,
      deactivation_reason TEXT
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS ux_credentials_active
      ON credentials(identity_ref, modality) WHERE active = 1
    """,
    "CREATE INDEX IF NOT EXISTS idx_credentials_lookup ON credentials(identity_ref, modality, active)",
    "CREATE INDEX IF NOT EXISTS idx_credentials_modality ON credentials(modality, active)",
    """
    CREATE TABLE IF NOT EXISTS verification_failures (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      credential_id TEXT NOT NULL REFERENCES credentials(id),
      identity_ref TEXT NOT NULL,
      failed_at REAL NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_failures_credential ON verification_failures(credential_id, failed_at)",
)

_COLUMNS = (
    "id, identity_ref, modality, commitment_hash, commitment_salt, fingerprint, "
    "quality_score, created_at, verification_count, successful_verifications, "
    "last_verified_at, last_similarity_score, active, deactivated_at, deactivation_reason"
)


def _is_transient(error: BaseException) -> bool:
    return isinstance(error, StorageError) and error.retriable


def _row_to_credential(row: sqlite3.Row) -> Credential:
    return Credential(
        id=row["id"],
        identity_ref=row["identity_ref"],
        modality=row["modality"],
        commitment_hash=row["commitment_hash"],
        commitment_salt=row["commitment_salt"],
        fingerprint=Fingerprint.from_dict(json.loads(row["fingerprint"])),
        quality_score=row["quality_score"],
        created_at=utc_from_epoch(row["created_at"]),
        verification_count=row["verification_count"],
        successful_verifications=row["successful_verifications"],
        last_verified_at=utc_from_epoch(row["last_verified_at"]),
        last_similarity_score=row["last_similarity_score"],
        active=bool(row["active"]),
        deactivated_at=utc_from_epoch(row["deactivated_at"]),
        deactivation_reason=(
            DeactivationReason(row["deactivation_reason"])
            if row["deactivation_reason"]
            else None
        ),
    )


class SQLiteCredentialStore(CredentialStore):
    """
    SQLite-backed credential store.

    A connection is opened per operation, so the store can be shared across
    threads. Writes run in ``BEGIN IMMEDIATE`` transactions; a locked
    database is retried with backoff before surfacing ``StorageError``.

    Parameters
    ----------
    path : str or Path, optional
        Database file. Defaults to ``config.DB_PATH``; parent directories
        are created on first use.
    busy_timeout_seconds : float, default=SQLITE_BUSY_TIMEOUT_SECONDS
        How long a connection waits on a locked database.
    """

    def __init__(
        self,
        path: Optional[Union[str, Path]] = None,
        busy_timeout_seconds: float = SQLITE_BUSY_TIMEOUT_SECONDS,
    ) -> None:
        self.path = Path(path) if path is not None else config.DB_PATH
        self.busy_timeout_seconds = busy_timeout_seconds

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(
                f"Cannot create database directory: {e}", operation="init", retriable=False
            ) from e

        self._init_schema()
        logger.info("SQLiteCredentialStore initialized", db_path=str(self.path))

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self.path),
            timeout=self.busy_timeout_seconds,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        return conn

    @contextmanager
    def _errors(self, operation: str) -> Iterator[None]:
        try:
            yield
        except sqlite3.IntegrityError:
            raise
        except sqlite3.OperationalError as e:
            message = str(e).lower()
            transient = "locked" in message or "busy" in message
            raise StorageError(
                f"SQLite operation failed: {e}", operation=operation, retriable=transient
            ) from e
        except sqlite3.DatabaseError as e:
            raise StorageError(
                f"SQLite operation failed: {e}", operation=operation, retriable=False
            ) from e

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[sqlite3.Connection]:
        with self._errors(operation), closing(self._connect()) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    @contextmanager
    def _read(self, operation: str) -> Iterator[sqlite3.Connection]:
        with self._errors(operation), closing(self._connect()) as conn:
            yield conn

    def _init_schema(self) -> None:
        with self._errors("init"), closing(self._connect()) as conn:
            conn.execute("PRAGMA journal_mode=WAL;")
            for statement in _SCHEMA:
                conn.execute(statement)

    @staticmethod
    def _insert(conn, identity_ref, modality, commitment_hash, commitment_salt,
                fingerprint, quality_score, now) -> str:
        credential_id = new_credential_id()
        conn.execute(
            """
            INSERT INTO credentials(id, identity_ref, modality, commitment_hash,
              commitment_salt, fingerprint, quality_score, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                credential_id,
                identity_ref,
                modality,
                commitment_hash,
                commitment_salt,
                json.dumps(fingerprint.to_dict(), separators=(",", ":")),
                float(quality_score),
                float(now),
            ),
        )
        return credential_id

    @staticmethod
    def _check_duplicates(conn, identity_ref, modality, duplicate_of) -> None:
        if duplicate_of is None:
            return
        rows = conn.execute(
            "SELECT fingerprint FROM credentials "
            "WHERE modality = ? AND active = 1 AND identity_ref != ?",
            (modality, identity_ref),
        )
        for row in rows:
            if duplicate_of(Fingerprint.from_dict(json.loads(row["fingerprint"]))):
                raise DuplicatePattern(identity_ref, modality)

    @retry(max_attempts=3, exceptions=(StorageError,), should_retry=_is_transient)
    def register(self, identity_ref, modality, commitment_hash, commitment_salt,
                 fingerprint, quality_score, now, duplicate_of=None):
        try:
            with self._transaction("register") as conn:
                self._check_duplicates(conn, identity_ref, modality, duplicate_of)
                return self._insert(conn, identity_ref, modality, commitment_hash,
                                    commitment_salt, fingerprint, quality_score, now)
        except sqlite3.IntegrityError:
            raise AlreadyRegistered(identity_ref, modality) from None

    def find(self, identity_ref, modality):
        with self._read("find") as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM credentials "
                "WHERE identity_ref = ? AND modality = ? AND active = 1",
                (identity_ref, modality),
            ).fetchone()
        return _row_to_credential(row) if row else None

    def get(self, credential_id):
        with self._read("get") as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM credentials WHERE id = ?", (credential_id,)
            ).fetchone()
        return _row_to_credential(row) if row else None

    @retry(max_attempts=3, exceptions=(StorageError,), should_retry=_is_transient)
    def deactivate(self, credential_id, reason, now):
        with self._transaction("deactivate") as conn:
            cur = conn.execute(
                "UPDATE credentials SET active = 0, deactivated_at = ?, deactivation_reason = ? "
                "WHERE id = ? AND active = 1",
                (float(now), DeactivationReason(reason).value, credential_id),
            )
            return cur.rowcount == 1

    @retry(max_attempts=3, exceptions=(StorageError,), should_retry=_is_transient)
    def replace_active(self, identity_ref, modality, commitment_hash, commitment_salt,
                       fingerprint, quality_score, now,
                       reason=DeactivationReason.PATTERN_UPDATE, duplicate_of=None):
        try:
            with self._transaction("replace_active") as conn:
                row = conn.execute(
                    "SELECT id FROM credentials "
                    "WHERE identity_ref = ? AND modality = ? AND active = 1",
                    (identity_ref, modality),
                ).fetchone()
                if row is None:
                    raise NotRegistered(identity_ref, modality)
                self._check_duplicates(conn, identity_ref, modality, duplicate_of)
                conn.execute(
                    "UPDATE credentials SET active = 0, deactivated_at = ?, "
                    "deactivation_reason = ? WHERE id = ?",
                    (float(now), DeactivationReason(reason).value, row["id"]),
                )
                new_id = self._insert(conn, identity_ref, modality, commitment_hash,
                                      commitment_salt, fingerprint, quality_score, now)
                return row["id"], new_id
        except sqlite3.IntegrityError:
            raise AlreadyRegistered(identity_ref, modality) from None

    @retry(max_attempts=3, exceptions=(StorageError,), should_retry=_is_transient)
    def record_verification(self, credential_id, success, now, similarity=None):
        with self._transaction("record_verification") as conn:
            if success:
                cur = conn.execute(
                    "UPDATE credentials SET verification_count = verification_count + 1, "
                    "successful_verifications = successful_verifications + 1, "
                    "last_verified_at = ?, last_similarity_score = ? WHERE id = ?",
                    (float(now), similarity, credential_id),
                )
            else:
                cur = conn.execute(
                    "UPDATE credentials SET verification_count = verification_count + 1 "
                    "WHERE id = ?",
                    (credential_id,),
                )
                if cur.rowcount == 1:
                    conn.execute(
                        "INSERT INTO verification_failures(credential_id, identity_ref, failed_at) "
                        "SELECT id, identity_ref, ? FROM credentials WHERE id = ?",
                        (float(now), credential_id),
                    )
            if cur.rowcount != 1:
                raise StorageError(
                    "Credential not found", operation="record_verification", retriable=False
                )

    def count_failures_since(self, credential_id, since):
        with self._read("count_failures_since") as conn:
            row = conn.execute(
                "SELECT COUNT(1) FROM verification_failures "
                "WHERE credential_id = ? AND failed_at >= ?",
                (credential_id, float(since)),
            ).fetchone()
        return int(row[0] if row else 0)

    @retry(max_attempts=3, exceptions=(StorageError,), should_retry=_is_transient)
    def prune_failures(self, before):
        with self._transaction("prune_failures") as conn:
            cur = conn.execute(
                "DELETE FROM verification_failures WHERE failed_at < ?", (float(before),)
            )
            return cur.rowcount

    def list_credentials(self, identity_ref):
        with self._read("list_credentials") as conn:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM credentials WHERE identity_ref = ? "
                "ORDER BY created_at, rowid",
                (identity_ref,),
            ).fetchall()
        return [_row_to_credential(row) for row in rows]

    def list_active(self, modality=None):
        sql = f"SELECT {_COLUMNS} FROM credentials WHERE active = 1"
        params: list = []
        if modality is not None:
            sql += " AND modality = ?"
            params.append(modality)
        with self._read("list_active") as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_row_to_credential(row) for row in rows]
