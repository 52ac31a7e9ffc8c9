"""
External collaborators of the identity-binding core.

- ``IdentityDirectory``: tells whether an identity is known and active.
- ``EventSink``: receives domain events such as ``credential_registered``
  for downstream workflows (badge minting, notifications) that live outside
  this package.
"""

import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Tuple

import structlog

from .signature_gate import validate_identity_ref

# Initialize structured logger
logger = structlog.get_logger(__name__)

EVENT_CREDENTIAL_REGISTERED = "credential_registered"
EVENT_CREDENTIAL_UPDATED = "credential_updated"
EVENT_CREDENTIAL_REMOVED = "credential_removed"


class IdentityDirectory(ABC):
    """Lookup of identities by public key."""

    @abstractmethod
    def is_active(self, identity_ref: str) -> bool:
        """True when the identity exists and may use the protocol."""


class OpenIdentityDirectory(IdentityDirectory):
    """Accepts every well-formed identity key."""

    def is_active(self, identity_ref: str) -> bool:
        return True


class StaticIdentityDirectory(IdentityDirectory):
    """
    Directory backed by an explicit set of identities.

    Parameters
    ----------
    identities : Iterable[str], optional
        Initially active identity keys.
    """

    def __init__(self, identities: Optional[Iterable[str]] = None) -> None:
        self._lock = threading.Lock()
        self._active = {validate_identity_ref(i) for i in (identities or ())}

    def add(self, identity_ref: str) -> None:
        with self._lock:
            self._active.add(validate_identity_ref(identity_ref))

    def deactivate(self, identity_ref: str) -> None:
        with self._lock:
            self._active.discard(identity_ref)

    def is_active(self, identity_ref: str) -> bool:
        with self._lock:
            return identity_ref in self._active


class EventSink(ABC):
    """Receiver of domain events."""

    @abstractmethod
    def emit(self, name: str, payload: Dict[str, Any]) -> None:
        """Deliver one event."""


class LoggingEventSink(EventSink):
    """Writes events to the structured log."""

    def emit(self, name: str, payload: Dict[str, Any]) -> None:
        logger.info("Domain event", event_name=name, **payload)


class RecordingEventSink(EventSink):
    """Keeps emitted events in memory, in order."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.events: List[Tuple[str, Dict[str, Any]]] = []

    def emit(self, name: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            self.events.append((name, dict(payload)))

    def names(self) -> List[str]:
        with self._lock:
            return [name for name, _ in self.events]
