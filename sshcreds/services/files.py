"""Superuser-aware access to key files on disk."""

import asyncio
import logging
import os
import tempfile
from pathlib import Path
from typing import Protocol, runtime_checkable

from sshcreds.config import SuperuserMode
from sshcreds.errors import FileAccessError, FileAccessErrorKind

logger = logging.getLogger(__name__)


@runtime_checkable
class FileAccess(Protocol):
    """Capability for reading and rewriting key files."""

    async def read(self, path: str) -> bytes:
        """Return the file contents or raise FileAccessError."""
        ...

    async def write(self, path: str, data: bytes) -> None:
        """Replace the file contents or raise FileAccessError."""
        ...

    async def exists(self, path: str) -> bool:
        """Check whether a file is still present."""
        ...


class LocalFileAccess:
    """Reads files directly, escalating through sudo when allowed.

    Superuser modes:
        none: never escalate
        try: escalate only after a permission failure
        require: always read through sudo
    """

    def __init__(
        self,
        superuser: SuperuserMode = "try",
        sudo_path: str = "sudo",
        timeout: float = 30.0,
    ):
        self.superuser = superuser
        self.sudo_path = sudo_path
        self.timeout = timeout

    async def read(self, path: str) -> bytes:
        if self.superuser != "require":
            try:
                return await asyncio.to_thread(Path(path).read_bytes)
            except FileNotFoundError:
                raise FileAccessError(FileAccessErrorKind.NOT_FOUND, f"No such file: {path}")
            except IsADirectoryError:
                raise FileAccessError(FileAccessErrorKind.NOT_FOUND, f"Not a regular file: {path}")
            except PermissionError:
                if self.superuser == "none":
                    raise FileAccessError(
                        FileAccessErrorKind.PERMISSION_DENIED, f"Permission denied: {path}"
                    )
                logger.debug("Permission denied reading %s, retrying with sudo", path)

        return await self._sudo_read(path)

    async def _sudo_read(self, path: str) -> bytes:
        try:
            proc = await asyncio.create_subprocess_exec(
                self.sudo_path,
                "-n",
                "cat",
                "--",
                str(path),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            raise FileAccessError(
                FileAccessErrorKind.PERMISSION_DENIED,
                f"Permission denied: {path} (sudo is not available)",
            )

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), self.timeout)
        except TimeoutError:
            proc.kill()
            await proc.wait()
            raise FileAccessError(
                FileAccessErrorKind.PERMISSION_DENIED, f"Timed out reading {path} with sudo"
            )

        if proc.returncode != 0:
            err = stderr.decode(errors="replace")
            if "No such file" in err:
                raise FileAccessError(FileAccessErrorKind.NOT_FOUND, f"No such file: {path}")
            raise FileAccessError(FileAccessErrorKind.PERMISSION_DENIED, f"Permission denied: {path}")
        return stdout

    async def write(self, path: str, data: bytes) -> None:
        try:
            await asyncio.to_thread(_atomic_write, Path(path), data)
        except FileNotFoundError:
            raise FileAccessError(FileAccessErrorKind.NOT_FOUND, f"No such directory for {path}")
        except PermissionError:
            raise FileAccessError(FileAccessErrorKind.PERMISSION_DENIED, f"Permission denied: {path}")

    async def exists(self, path: str) -> bool:
        return await asyncio.to_thread(os.path.exists, path)


def _atomic_write(path: Path, data: bytes) -> None:
    """Write to a sibling temp file with mode 0600, then rename over the target."""
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        os.fchmod(fd, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise
