"""Shared test fixtures."""

import asyncio
from pathlib import Path

import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import (
    BestAvailableEncryption,
    Encoding,
    NoEncryption,
    PrivateFormat,
    PublicFormat,
)

from sshcreds.errors import AgentError, AgentErrorKind, ParseError, PassphraseError
from sshcreds.models import AgentIdentity
from sshcreds.services.files import LocalFileAccess
from sshcreds.services.keyfile import (
    KeyFileReader,
    decrypt_private_key,
    fingerprint_of,
    format_public_line,
    public_parts,
)
from sshcreds.services.keystore import KeyStore
from sshcreds.services.notifier import ChangeNotifier

PASSPHRASE = "correct horse"


class FakeAgent:
    """In-memory agent that decrypts keys the way a real agent client does."""

    def __init__(self):
        self.identities: dict[str, AgentIdentity] = {}
        self.add_calls = 0
        self.remove_calls = 0
        self.list_calls = 0
        self.failures: list[AgentError] = []
        self.add_gate: asyncio.Event | None = None
        self.list_gate: asyncio.Event | None = None

    def inject(self, private_key, comment: str | None = None) -> AgentIdentity:
        """Load a key out-of-band, as another process would."""
        key_type, blob, _ = public_parts(private_key)
        identity = AgentIdentity(
            fingerprint=fingerprint_of(blob),
            public_data=format_public_line(key_type, blob),
            comment=comment,
        )
        self.identities[identity.fingerprint] = identity
        return identity

    def _maybe_fail(self) -> None:
        if self.failures:
            raise self.failures.pop(0)

    async def list(self) -> list[AgentIdentity]:
        self.list_calls += 1
        identities = list(self.identities.values())
        if self.list_gate is not None:
            # Answer with the identities held when the request arrived
            await self.list_gate.wait()
        self._maybe_fail()
        return identities

    async def add(self, private_key_bytes: bytes, passphrase: str = "") -> None:
        self.add_calls += 1
        if self.add_gate is not None:
            await self.add_gate.wait()
        self._maybe_fail()
        try:
            private_key = decrypt_private_key(private_key_bytes, passphrase)
        except PassphraseError as e:
            raise AgentError(AgentErrorKind.BAD_PASSPHRASE, e.message)
        except ParseError as e:
            raise AgentError(AgentErrorKind.REFUSED, e.message)
        self.inject(private_key, comment="(stdin)")

    async def remove(self, fingerprint: str) -> None:
        self.remove_calls += 1
        self._maybe_fail()
        if self.identities.pop(fingerprint, None) is None:
            raise AgentError(AgentErrorKind.NOT_FOUND, f"Key {fingerprint} is not loaded")


def write_key(path: Path, private_key, passphrase: str = "", comment: str = "test@localhost") -> Path:
    """Write an OpenSSH private key and its .pub sibling."""
    encryption = BestAvailableEncryption(passphrase.encode()) if passphrase else NoEncryption()
    path.write_bytes(
        private_key.private_bytes(
            encoding=Encoding.PEM,
            format=PrivateFormat.OpenSSH,
            encryption_algorithm=encryption,
        )
    )
    public_ssh = private_key.public_key().public_bytes(
        encoding=Encoding.OpenSSH,
        format=PublicFormat.OpenSSH,
    ).decode()
    Path(f"{path}.pub").write_text(f"{public_ssh} {comment}\n")
    return path


def fingerprint_for(private_key) -> str:
    _, blob, _ = public_parts(private_key)
    return fingerprint_of(blob)


@pytest.fixture
def ed25519_keypair():
    """Generate ephemeral ed25519 keypair for testing."""
    private_key = Ed25519PrivateKey.generate()
    public_key = private_key.public_key()
    return private_key, public_key


@pytest.fixture
def plain_key_file(tmp_path, ed25519_keypair):
    """Unencrypted OpenSSH private key with a .pub file."""
    private_key, _ = ed25519_keypair
    return write_key(tmp_path / "id_ed25519", private_key, comment="plain@localhost")


@pytest.fixture
def encrypted_key_file(tmp_path):
    """Passphrase-protected OpenSSH private key with a .pub file."""
    private_key = Ed25519PrivateKey.generate()
    return write_key(tmp_path / "id_locked", private_key, PASSPHRASE, comment="locked@localhost")


@pytest.fixture
def fake_agent():
    return FakeAgent()


@pytest.fixture
def key_reader():
    return KeyFileReader(LocalFileAccess(superuser="none"))


@pytest.fixture
def notifier():
    return ChangeNotifier()


@pytest.fixture
def store(fake_agent, key_reader, notifier):
    """KeyStore over the fake agent with the default queue policy."""
    return KeyStore(fake_agent, key_reader, notifier)
