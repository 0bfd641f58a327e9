"""sshcreds - manage the SSH keys loaded into the agent.

Usage:
    python -m sshcreds.main list
    python -m sshcreds.main add ~/.ssh/id_ed25519
    python -m sshcreds.main unload <identity>
    python -m sshcreds.main passwd <identity>
    python -m sshcreds.main watch
"""

import argparse
import asyncio
import getpass
import logging
import sys

from sshcreds.config import Settings, get_settings
from sshcreds.errors import CredentialError, NeedsPassphrase
from sshcreds.models import Key
from sshcreds.services.di import get_keystore_context
from sshcreds.services.keystore import KeyStore

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    """Attach a stream handler to the package logger."""
    handler = logging.StreamHandler()
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
        )
    )
    package_logger = logging.getLogger("sshcreds")
    package_logger.setLevel(level.upper())
    package_logger.addHandler(handler)


def format_key(key: Key) -> str:
    marker = "*" if key.loaded else " "
    return f"[{marker}] {key.label}\n    {key.key_type or 'unknown'} {key.fingerprint}\n    id: {key.identity_id}"


def print_keys(store: KeyStore) -> None:
    keys = store.snapshot()
    if not keys:
        print("No keys found.")
        return
    for key in keys:
        print(format_key(key))


async def load_interactive(store: KeyStore, target: str) -> Key:
    """Load a key, prompting for the passphrase only when one is needed."""
    try:
        return await store.add_from_path(target)
    except NeedsPassphrase:
        passphrase = getpass.getpass(f"Passphrase for {target}: ")
        return await store.load(target, passphrase)


async def change_interactive(store: KeyStore, target: str) -> Key:
    old = getpass.getpass("Current passphrase: ")
    new = getpass.getpass("New passphrase: ")
    confirm = getpass.getpass("Confirm new passphrase: ")
    if new != confirm:
        raise CredentialError("The new passphrases do not match")
    return await store.change_passphrase(target, old, new)


async def watch(store: KeyStore) -> None:
    print_keys(store)
    with store.subscribe() as changes:
        async for event in changes:
            print(f"\n-- change {event.generation} --")
            print_keys(store)


async def run(args: argparse.Namespace, settings: Settings) -> int:
    if args.command != "watch":
        settings = settings.model_copy(update={"reconcile_interval_seconds": 0})

    async with get_keystore_context(settings) as store:
        try:
            if args.command == "list":
                print_keys(store)
            elif args.command in ("add", "load"):
                key = await load_interactive(store, args.target)
                print(f"Loaded {key.label}")
            elif args.command == "unload":
                key = await store.unload(args.target)
                print(f"Unloaded {key.label}")
            elif args.command == "passwd":
                key = await change_interactive(store, args.target)
                print(f"Passphrase changed for {key.label}")
            elif args.command == "watch":
                await watch(store)
        except CredentialError as e:
            print(f"Error: {e.message}", file=sys.stderr)
            return 1
    return 0


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Manage SSH keys loaded into the agent")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("list", help="List known keys")
    add = subparsers.add_parser("add", help="Add a key file and load it")
    add.add_argument("target", help="Path to the private key")
    load = subparsers.add_parser("load", help="Load a known key or key file")
    load.add_argument("target", help="Identity or path")
    unload = subparsers.add_parser("unload", help="Remove a key from the agent")
    unload.add_argument("target", help="Identity or path")
    passwd = subparsers.add_parser("passwd", help="Change a key's passphrase")
    passwd.add_argument("target", help="Identity or path")
    subparsers.add_parser("watch", help="Print keys whenever they change")

    args = parser.parse_args()
    settings = get_settings()
    configure_logging(settings.log_level)

    try:
        sys.exit(asyncio.run(run(args, settings)))
    except KeyboardInterrupt:
        print("\nInterrupted.")


if __name__ == "__main__":
    main()
