"""Unit tests for the command line front end."""

import argparse
from contextlib import asynccontextmanager
from unittest.mock import patch

import pytest
from conftest import PASSPHRASE

from sshcreds.config import Settings
from sshcreds.main import format_key, run
from sshcreds.models import Key


@pytest.fixture
def session(store):
    """Route the CLI to the fake-agent store instead of ssh-add."""

    @asynccontextmanager
    async def fake_context(settings=None):
        yield store

    with patch("sshcreds.main.get_keystore_context", fake_context):
        yield store


def args(command: str, target: str | None = None) -> argparse.Namespace:
    return argparse.Namespace(command=command, target=target)


class TestRun:
    """Tests for CLI subcommands."""

    @pytest.mark.asyncio
    async def test_list_empty(self, session, capsys):
        assert await run(args("list"), Settings()) == 0

        assert "No keys found." in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_add_plain_key(self, session, plain_key_file, capsys):
        with patch("sshcreds.main.getpass.getpass") as mock_getpass:
            assert await run(args("add", str(plain_key_file)), Settings()) == 0

        mock_getpass.assert_not_called()
        assert f"Loaded {plain_key_file}" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_add_encrypted_key_prompts(self, session, encrypted_key_file):
        """Encrypted keys are retried once with a prompted passphrase."""
        with patch("sshcreds.main.getpass.getpass", return_value=PASSPHRASE) as mock_getpass:
            assert await run(args("add", str(encrypted_key_file)), Settings()) == 0

        mock_getpass.assert_called_once()
        assert session.get(str(encrypted_key_file)).loaded is True

    @pytest.mark.asyncio
    async def test_wrong_passphrase_reports_error(self, session, encrypted_key_file, capsys):
        with patch("sshcreds.main.getpass.getpass", return_value="wrong"):
            assert await run(args("add", str(encrypted_key_file)), Settings()) == 1

        err = capsys.readouterr().err
        assert err.startswith("Error: ")
        assert "wrong" not in err

    @pytest.mark.asyncio
    async def test_unload(self, session, plain_key_file, capsys):
        key = await session.load(str(plain_key_file))

        assert await run(args("unload", key.identity_id), Settings()) == 0

        assert session.get(key.identity_id).loaded is False
        assert "Unloaded" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_unload_unknown(self, session, capsys):
        assert await run(args("unload", "nope"), Settings()) == 1

        assert "Unknown key: nope" in capsys.readouterr().err

    @pytest.mark.asyncio
    async def test_passwd_mismatch(self, session, plain_key_file, capsys):
        await session.load(str(plain_key_file))

        with patch("sshcreds.main.getpass.getpass", side_effect=["", "one", "two"]):
            assert await run(args("passwd", str(plain_key_file)), Settings()) == 1

        assert "do not match" in capsys.readouterr().err

    @pytest.mark.asyncio
    async def test_passwd(self, session, plain_key_file):
        await session.load(str(plain_key_file))

        with patch("sshcreds.main.getpass.getpass", side_effect=["", "fresh", "fresh"]):
            assert await run(args("passwd", str(plain_key_file)), Settings()) == 0

        assert session.get(str(plain_key_file)).encrypted is True


def test_format_key_marks_loaded():
    key = Key(identity_id="abc", fingerprint="SHA256:xyz", public_data="ssh-ed25519 AAAA", loaded=True)

    assert format_key(key).startswith("[*] SHA256:xyz")
