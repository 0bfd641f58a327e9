"""Session factory: builds an explicitly owned KeyStore from settings."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sshcreds.config import Settings, get_settings
from sshcreds.services.agent import SSHAddAgentClient
from sshcreds.services.files import LocalFileAccess
from sshcreds.services.keyfile import KeyFileReader
from sshcreds.services.keystore import KeyStore
from sshcreds.services.notifier import ChangeNotifier


def build_keystore(settings: Settings | None = None) -> KeyStore:
    """Create an unstarted KeyStore wired to ssh-add and the local filesystem.

    Args:
        settings: Settings to use, defaults to the environment settings

    Returns:
        KeyStore instance; call start() or use it as an async context manager
    """
    settings = settings or get_settings()

    files = LocalFileAccess(
        superuser=settings.superuser,
        sudo_path=settings.sudo_path,
        timeout=settings.agent_timeout_seconds,
    )
    agent = SSHAddAgentClient(
        ssh_add_path=settings.ssh_add_path,
        socket=settings.agent_socket,
        timeout=settings.agent_timeout_seconds,
    )
    return KeyStore(
        agent,
        KeyFileReader(files),
        ChangeNotifier(),
        busy_policy=settings.busy_policy,
        retry_delays=settings.agent_retry_delays,
        reconcile_interval_seconds=settings.reconcile_interval_seconds,
        ssh_dir=settings.ssh_dir,
        default_key_names=settings.default_key_names,
    )


@asynccontextmanager
async def get_keystore_context(
    settings: Settings | None = None,
) -> AsyncGenerator[KeyStore, None]:
    """Run a KeyStore session.

    Yields:
        Started KeyStore, closed on exit (loaded keys stay in the agent)
    """
    store = build_keystore(settings)
    await store.start()
    try:
        yield store
    finally:
        await store.close()
