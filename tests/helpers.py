"""Shared test helpers: clocks, identities, feature maps and a protocol client."""

import hashlib

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from humanitas_id.constants import PURPOSE_CAPTURE, PURPOSE_REMOVAL
from humanitas_id.signature_gate import public_key_hex, sign_message

START_TIME = 1_700_000_000.0
FEATURE_COUNT = 64


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: float = START_TIME) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class Identity:
    """An Ed25519 key pair acting as one protocol participant."""

    def __init__(self) -> None:
        self.private_key = Ed25519PrivateKey.generate()
        self.ref = public_key_hex(self.private_key)

    def sign(self, purpose: str, subject: str) -> str:
        return sign_message(self.private_key, purpose, subject)


def _unit(*parts) -> float:
    """Deterministic value in [0, 1) derived from ``parts``."""
    digest = hashlib.sha256("|".join(str(p) for p in parts).encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big") / float(2 ** 64)


def base_features(seed: int = 0, count: int = FEATURE_COUNT):
    """Pseudo-random feature map with every value in [0.05, 0.95), one per seed."""
    return {f"f{i:04d}": round(0.05 + 0.9 * _unit("pattern", seed, i), 6) for i in range(count)}


def noisy_features(features, amplitude: float = 0.01, seed: int = 0):
    """Another capture of the same pattern: each value moves by at most ``amplitude``."""
    return {
        name: value + amplitude * (2.0 * _unit("noise", seed, name) - 1.0)
        for name, value in features.items()
    }


def swapped_features(features):
    """The same values with neighbouring features swapped pairwise."""
    names = sorted(features)
    swapped = dict(features)
    for first, second in zip(names[0::2], names[1::2]):
        swapped[first], swapped[second] = features[second], features[first]
    return swapped


def feature_payload(features, quality: float = 0.85):
    return {"features": dict(features), "quality": quality}


class ProtocolClient:
    """Drives the two-phase protocol for one identity."""

    def __init__(self, service, identity: Identity) -> None:
        self.service = service
        self.identity = identity

    def begin(self, features, modality: str = "facial", quality: float = 0.85) -> str:
        started = self.service.begin_capture(
            self.identity.ref,
            modality,
            feature_payload(features, quality),
            self.identity.sign(PURPOSE_CAPTURE, self.identity.ref),
        )
        return started["session_token"]

    def complete(self, token: str, action: str):
        return self.service.complete_capture(token, action, self.identity.sign(action, token))

    def register(self, features, modality: str = "facial", quality: float = 0.85):
        return self.complete(self.begin(features, modality, quality), "register")

    def verify(self, features, modality: str = "facial"):
        return self.complete(self.begin(features, modality), "verify")

    def update(self, features, modality: str = "facial", quality: float = 0.85):
        return self.complete(self.begin(features, modality, quality), "update")

    def remove(self, modality: str = "facial"):
        subject = f"{self.identity.ref}:{modality}"
        return self.service.remove_credential(
            self.identity.ref, modality, self.identity.sign(PURPOSE_REMOVAL, subject)
        )
