"""Data models for tracked SSH identities."""

import uuid
from enum import Enum

from pydantic import BaseModel, ConfigDict

NAMESPACE_SSHCREDS = uuid.UUID("6f1c2b9e-4d3a-5e7f-8a90-b1c2d3e4f5a6")


def identity_for(fingerprint: str) -> str:
    """Derive the stable identity handle for a fingerprint.

    Uses UUID5 with a fixed namespace so the same key material maps to the
    same handle regardless of which file it was read from.

    Args:
        fingerprint: SHA256 fingerprint of the public key

    Returns:
        Deterministic UUID string
    """
    return str(uuid.uuid5(NAMESPACE_SSHCREDS, fingerprint))


class KeyState(str, Enum):
    """Per-key load state."""

    UNLOADED = "unloaded"
    LOADING = "loading"
    LOADED = "loaded"
    LOAD_FAILED = "load_failed"
    UNLOADING = "unloading"


class Key(BaseModel):
    """One SSH identity known to the broker.

    Instances are immutable; the store replaces them wholesale on change.
    """

    model_config = ConfigDict(frozen=True)

    identity_id: str
    fingerprint: str
    public_data: str
    name: str | None = None
    comment: str | None = None
    key_type: str | None = None
    loaded: bool = False
    encrypted: bool | None = None
    state: KeyState = KeyState.UNLOADED

    @property
    def label(self) -> str:
        """Human-facing name: the path, else the comment, else the fingerprint."""
        return self.name or self.comment or self.fingerprint


class ScannedKey(BaseModel):
    """Metadata read from a private key file without its passphrase."""

    model_config = ConfigDict(frozen=True)

    path: str
    encrypted: bool
    fingerprint: str | None = None
    public_data: str | None = None
    comment: str | None = None
    key_type: str | None = None


class AgentIdentity(BaseModel):
    """One identity as listed by the agent."""

    model_config = ConfigDict(frozen=True)

    fingerprint: str
    public_data: str
    comment: str | None = None

    @property
    def key_type(self) -> str:
        return self.public_data.split(None, 1)[0]


class ChangeEvent(BaseModel):
    """A coalesced "store changed" signal."""

    model_config = ConfigDict(frozen=True)

    generation: int
