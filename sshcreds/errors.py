"""Error taxonomy for the credential broker.

Every message is safe to show to a user verbatim. No error ever carries a
passphrase, neither in its message nor in its attributes.
"""

from enum import Enum


class ParseErrorKind(str, Enum):
    """Why a key file could not be used."""

    NOT_A_KEY = "not_a_key"
    UNREADABLE = "unreadable"


class AgentErrorKind(str, Enum):
    """Raw outcome classes reported by an agent client."""

    REFUSED = "refused"
    BAD_PASSPHRASE = "bad_passphrase"
    IO = "io"
    NOT_FOUND = "not_found"


class FileAccessErrorKind(str, Enum):
    """Failure modes of the file access capability."""

    PERMISSION_DENIED = "permission_denied"
    NOT_FOUND = "not_found"


class CredentialError(Exception):
    """Base class for all broker errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class FileAccessError(CredentialError):
    """A key file could not be read or written."""

    def __init__(self, kind: FileAccessErrorKind, message: str):
        super().__init__(message)
        self.kind = kind


class ParseError(CredentialError):
    """A file is not a usable private key, or could not be read."""

    def __init__(self, kind: ParseErrorKind, message: str):
        super().__init__(message)
        self.kind = kind


class PassphraseError(CredentialError):
    """Private key material could not be decrypted with the given passphrase.

    ``missing`` is True when the key is encrypted and no passphrase was given.
    """

    def __init__(self, message: str, missing: bool = False):
        super().__init__(message)
        self.missing = missing


class AgentError(CredentialError):
    """An agent operation failed."""

    def __init__(self, kind: AgentErrorKind, message: str):
        super().__init__(message)
        self.kind = kind


class KeyLoadError(CredentialError):
    """Loading a key into the agent did not succeed.

    Attributes:
        sent_password: Whether a passphrase was supplied on this attempt.
        reason: Kind of the underlying failure (an AgentErrorKind or
            ParseErrorKind value).
    """

    def __init__(self, message: str, sent_password: bool, reason: str):
        super().__init__(message)
        self.sent_password = sent_password
        self.reason = reason


class NeedsPassphrase(KeyLoadError):
    """The key is encrypted and no passphrase was supplied.

    This is the expected outcome of adding an encrypted key; callers should
    prompt for a passphrase and retry.
    """

    def __init__(self, message: str = "Key is protected by a passphrase"):
        super().__init__(message, sent_password=False, reason=AgentErrorKind.BAD_PASSPHRASE.value)


class LoadFailed(KeyLoadError):
    """Loading failed for a reason a retry with a prompt would not fix."""


class Busy(CredentialError):
    """Another operation on the same key is still in flight."""


class UnknownKey(CredentialError):
    """No key with the given identity is tracked."""


class WrongOldPassphrase(CredentialError):
    """The current passphrase given for a passphrase change is wrong."""


class KeyIOError(CredentialError):
    """A key file could not be read or rewritten during a passphrase change."""
