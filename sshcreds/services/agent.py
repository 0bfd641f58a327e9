"""SSH agent client.

The broker talks to the agent only through ``AgentClient``. The concrete
client drives OpenSSH's ``ssh-add``; it reports raw outcomes and never
retries.
"""

import asyncio
import logging
import os
import tempfile
from pathlib import Path
from typing import Protocol, runtime_checkable

from sshcreds.errors import AgentError, AgentErrorKind, ParseError, PassphraseError
from sshcreds.models import AgentIdentity
from sshcreds.services.keyfile import (
    decrypt_private_key,
    fingerprint_of,
    format_public_line,
    parse_public_line,
    unencrypted_openssh,
)

logger = logging.getLogger(__name__)

# ssh-add exit status when the agent cannot be contacted
_EXIT_NO_AGENT = 2


@runtime_checkable
class AgentClient(Protocol):
    """Capability wrapper around a running SSH agent."""

    async def list(self) -> list[AgentIdentity]:
        """List loaded identities in agent order.

        Raises:
            AgentError: IO if the agent is unreachable
        """
        ...

    async def add(self, private_key_bytes: bytes, passphrase: str = "") -> None:
        """Load a private key into the agent.

        Raises:
            AgentError: BAD_PASSPHRASE, REFUSED or IO
        """
        ...

    async def remove(self, fingerprint: str) -> None:
        """Remove a loaded identity from the agent.

        Raises:
            AgentError: NOT_FOUND or IO
        """
        ...


def _first_line(text: str) -> str:
    for line in text.splitlines():
        if line.strip():
            return line.strip()
    return ""


class SSHAddAgentClient:
    """Agent client backed by the ``ssh-add`` command."""

    def __init__(
        self,
        ssh_add_path: str = "ssh-add",
        socket: str | None = None,
        timeout: float = 30.0,
    ):
        self.ssh_add_path = ssh_add_path
        self.socket = socket
        self.timeout = timeout

    def _env(self) -> dict[str, str]:
        env = dict(os.environ)
        if self.socket:
            env["SSH_AUTH_SOCK"] = self.socket
        # Never let ssh-add pop up a passphrase prompt of its own
        env.pop("SSH_ASKPASS", None)
        env["SSH_ASKPASS_REQUIRE"] = "never"
        return env

    async def _run(self, *args: str, input: bytes | None = None) -> tuple[int, str, str]:
        try:
            proc = await asyncio.create_subprocess_exec(
                self.ssh_add_path,
                *args,
                stdin=asyncio.subprocess.PIPE if input is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._env(),
            )
        except OSError as e:
            raise AgentError(AgentErrorKind.IO, f"Cannot run {self.ssh_add_path}: {e.strerror}")

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(input), self.timeout)
        except TimeoutError:
            proc.kill()
            await proc.wait()
            raise AgentError(AgentErrorKind.IO, "Timed out talking to the SSH agent")
        except asyncio.CancelledError:
            proc.kill()
            raise

        return (
            proc.returncode,
            stdout.decode(errors="replace"),
            stderr.decode(errors="replace"),
        )

    async def list(self) -> list[AgentIdentity]:
        code, out, err = await self._run("-L")
        if code == _EXIT_NO_AGENT:
            raise AgentError(AgentErrorKind.IO, _first_line(err) or "Could not contact the SSH agent")
        if code != 0:
            if "no identities" in (out + err).lower():
                return []
            raise AgentError(AgentErrorKind.IO, _first_line(err) or "Listing agent identities failed")

        identities = []
        for line in out.splitlines():
            if not line.strip():
                continue
            try:
                key_type, blob, comment = parse_public_line(line)
            except ValueError:
                logger.debug("Skipping unparseable agent identity line")
                continue
            identities.append(
                AgentIdentity(
                    fingerprint=fingerprint_of(blob),
                    public_data=format_public_line(key_type, blob),
                    comment=comment,
                )
            )
        return identities

    async def add(self, private_key_bytes: bytes, passphrase: str = "") -> None:
        try:
            # bcrypt key derivation is CPU bound
            private_key = await asyncio.to_thread(
                decrypt_private_key, private_key_bytes, passphrase
            )
        except PassphraseError as e:
            raise AgentError(AgentErrorKind.BAD_PASSPHRASE, e.message)
        except ParseError as e:
            raise AgentError(AgentErrorKind.REFUSED, e.message)

        code, _out, err = await self._run("-q", "-", input=unencrypted_openssh(private_key))
        if code == 0:
            return
        if code == _EXIT_NO_AGENT:
            raise AgentError(AgentErrorKind.IO, _first_line(err) or "Could not contact the SSH agent")
        raise AgentError(AgentErrorKind.REFUSED, _first_line(err) or "The SSH agent refused the key")

    async def remove(self, fingerprint: str) -> None:
        identities = await self.list()
        match = next((i for i in identities if i.fingerprint == fingerprint), None)
        if match is None:
            raise AgentError(AgentErrorKind.NOT_FOUND, f"Key {fingerprint} is not loaded")

        with tempfile.TemporaryDirectory(prefix="sshcreds-") as tmpdir:
            public_file = Path(tmpdir) / "identity.pub"
            public_file.write_text(f"{match.public_data}\n")
            code, _out, err = await self._run("-d", str(public_file))

        if code == 0:
            return
        if code == _EXIT_NO_AGENT:
            raise AgentError(AgentErrorKind.IO, _first_line(err) or "Could not contact the SSH agent")
        # Removed out-of-band between listing and deleting
        raise AgentError(AgentErrorKind.NOT_FOUND, f"Key {fingerprint} is not loaded")
