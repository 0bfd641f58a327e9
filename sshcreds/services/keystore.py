"""Credential broker: the authoritative view of known and loaded SSH keys.

The store owns the mapping of tracked keys, reconciles it against the
agent, and serializes load/unload/change operations per key. Each
operation publishes at most one settled change; transient states
(loading, unloading) are visible through ``state()`` only.

Usage:
    async with KeyStore(agent, reader) as store:
        try:
            key = await store.add_from_path("~/.ssh/id_ed25519")
        except NeedsPassphrase:
            key = await store.load("~/.ssh/id_ed25519", getpass())

        with store.subscribe() as changes:
            async for _event in changes:
                render(store.snapshot())
"""

import asyncio
import logging
import os
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from sshcreds.config import BusyPolicy
from sshcreds.errors import (
    AgentError,
    AgentErrorKind,
    Busy,
    FileAccessError,
    KeyIOError,
    LoadFailed,
    NeedsPassphrase,
    ParseError,
    ParseErrorKind,
    PassphraseError,
    UnknownKey,
)
from sshcreds.models import AgentIdentity, Key, KeyState, ScannedKey, identity_for
from sshcreds.services.agent import AgentClient
from sshcreds.services.keyfile import (
    KeyFileReader,
    decrypt_private_key,
    discover,
    fingerprint_of,
    format_public_line,
    public_parts,
    reencrypt_private_key,
)
from sshcreds.services.notifier import ChangeNotifier, Subscription

logger = logging.getLogger(__name__)


def _resolve_path(path: str) -> str:
    return os.path.abspath(os.path.expanduser(path))


class KeyStore:
    """Session-scoped SSH credential broker.

    Operations on different keys run concurrently. Operations on the same
    key are serialized: with busy_policy="queue" a second call waits its
    turn (FIFO), with busy_policy="fail" it raises Busy at once.
    """

    def __init__(
        self,
        agent: AgentClient,
        reader: KeyFileReader,
        notifier: ChangeNotifier | None = None,
        *,
        busy_policy: BusyPolicy = "queue",
        retry_delays: Sequence[float] = (),
        reconcile_interval_seconds: float = 0.0,
        ssh_dir: Path | None = None,
        default_key_names: Sequence[str] = (),
    ):
        self.agent = agent
        self.reader = reader
        self.notifier = notifier or ChangeNotifier()
        self.busy_policy = busy_policy
        self.retry_delays = list(retry_delays)
        self.reconcile_interval_seconds = reconcile_interval_seconds
        self.ssh_dir = ssh_dir
        self.default_key_names = list(default_key_names)

        self._keys: dict[str, Key] = {}
        self._paths: dict[str, str] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._versions: dict[str, int] = {}
        self._mutations = 0
        self._inflight: dict[str, KeyState] = {}
        self._reconcile_lock = asyncio.Lock()
        self._scheduler_task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Observer surface
    # ------------------------------------------------------------------

    def snapshot(self) -> list[Key]:
        """Current keys, ordered by label. Keys are immutable copies."""
        return sorted(self._keys.values(), key=lambda k: (k.label, k.fingerprint))

    def get(self, id_or_path: str) -> Key | None:
        """Look up a key by identity or by any path it was loaded from."""
        key = self._keys.get(id_or_path)
        if key is not None:
            return key
        identity_id = self._paths.get(_resolve_path(id_or_path))
        return self._keys.get(identity_id) if identity_id else None

    def state(self, identity_id: str) -> KeyState | None:
        """Live state of a key, including in-flight transitions."""
        if identity_id in self._inflight:
            return self._inflight[identity_id]
        key = self._keys.get(identity_id)
        return key.state if key else None

    def subscribe(self) -> Subscription:
        """Subscribe to coalesced change events."""
        return self.notifier.subscribe()

    # ------------------------------------------------------------------
    # Load
    # ------------------------------------------------------------------

    async def load(self, id_or_path: str, passphrase: str = "") -> Key:
        """Load a key into the agent.

        Args:
            id_or_path: Identity of a tracked key, or a private key path
            passphrase: Passphrase for an encrypted key; empty to try without

        Returns:
            The loaded Key

        Raises:
            NeedsPassphrase: Key is encrypted and no passphrase was given
            LoadFailed: Any other failure; ``sent_password`` tells whether
                a passphrase was tried
            Busy: Another operation on the key is in flight (fail policy)
        """
        sent_password = bool(passphrase)
        key = self.get(id_or_path)
        if key is not None:
            async with self._exclusive(key.identity_id):
                current = self._require(key.identity_id)
                return await self._load_locked(current, passphrase, tracked=True)

        path = _resolve_path(id_or_path)
        try:
            scanned = await self.reader.scan(path)
        except ParseError as e:
            logger.info("audit.key_load_failed path=%s reason=%s", path, e.kind.value)
            raise LoadFailed(e.message, sent_password, e.kind.value) from e

        if scanned.fingerprint is None:
            async with self._exclusive(f"path:{path}"):
                scanned = await self._unlock_for_metadata(scanned, passphrase)
                return await self._load_scanned(scanned, passphrase)
        return await self._load_scanned(scanned, passphrase)

    async def add_from_path(self, path: str) -> Key:
        """Add a key file, trying first without a passphrase."""
        return await self.load(path, "")

    async def _load_scanned(self, scanned: ScannedKey, passphrase: str) -> Key:
        identity_id = identity_for(scanned.fingerprint)
        async with self._exclusive(identity_id):
            candidate, tracked = self._candidate(scanned)
            try:
                return await self._load_locked(candidate, passphrase, tracked=tracked)
            finally:
                # Only paths of keys that made it into the store are indexed
                if identity_id in self._keys:
                    self._paths[scanned.path] = identity_id

    async def _unlock_for_metadata(self, scanned: ScannedKey, passphrase: str) -> ScannedKey:
        """Decrypt a key whose public half is unknown to learn its fingerprint."""
        sent_password = bool(passphrase)
        try:
            data = await self.reader.read_private(scanned.path)
            private_key = await asyncio.to_thread(decrypt_private_key, data, passphrase)
        except PassphraseError as e:
            if not sent_password:
                raise NeedsPassphrase() from e
            raise LoadFailed(e.message, True, AgentErrorKind.BAD_PASSPHRASE.value) from e
        except ParseError as e:
            raise LoadFailed(e.message, sent_password, e.kind.value) from e

        key_type, blob, _ = public_parts(private_key)
        return scanned.model_copy(
            update={
                "fingerprint": fingerprint_of(blob),
                "public_data": format_public_line(key_type, blob),
                "key_type": key_type,
            }
        )

    def _candidate(self, scanned: ScannedKey) -> tuple[Key, bool]:
        """Key for a scanned file, merged into an existing entry by fingerprint."""
        identity_id = identity_for(scanned.fingerprint)
        existing = self._keys.get(identity_id)
        if existing is None:
            key = Key(
                identity_id=identity_id,
                fingerprint=scanned.fingerprint,
                public_data=scanned.public_data,
                name=scanned.path,
                comment=scanned.comment,
                key_type=scanned.key_type,
                encrypted=scanned.encrypted,
            )
            return key, False

        updates: dict[str, Any] = {}
        if existing.name is None:
            updates["name"] = scanned.path
            updates["encrypted"] = scanned.encrypted
        if existing.comment is None and scanned.comment:
            updates["comment"] = scanned.comment
        if existing.key_type is None:
            updates["key_type"] = scanned.key_type
        return existing.model_copy(update=updates), True

    async def _load_locked(self, key: Key, passphrase: str, tracked: bool) -> Key:
        sent_password = bool(passphrase)
        if tracked and key.loaded:
            self._commit(key)
            return key
        if key.name is None:
            raise LoadFailed(
                "Key has no file to load from", sent_password, ParseErrorKind.UNREADABLE.value
            )

        self._inflight[key.identity_id] = KeyState.LOADING
        try:
            data = await self.reader.read_private(key.name)
            await self._call_agent(self.agent.add, data, passphrase)
        except ParseError as e:
            self._commit(key.model_copy(update={"loaded": False, "state": KeyState.LOAD_FAILED}))
            logger.info("audit.key_load_failed key=%s reason=%s", key.identity_id, e.kind.value)
            raise LoadFailed(e.message, sent_password, e.kind.value) from e
        except AgentError as e:
            if e.kind == AgentErrorKind.BAD_PASSPHRASE and not sent_password:
                self._commit(
                    key.model_copy(
                        update={"loaded": False, "encrypted": True, "state": KeyState.UNLOADED}
                    )
                )
                raise NeedsPassphrase() from e
            self._commit(key.model_copy(update={"loaded": False, "state": KeyState.LOAD_FAILED}))
            logger.info(
                "audit.key_load_failed key=%s reason=%s sent_password=%s",
                key.identity_id,
                e.kind.value,
                sent_password,
            )
            raise LoadFailed(e.message, sent_password, e.kind.value) from e
        finally:
            self._inflight.pop(key.identity_id, None)

        loaded = key.model_copy(update={"loaded": True, "state": KeyState.LOADED})
        self._commit(loaded)
        logger.info("audit.key_loaded key=%s fingerprint=%s", key.identity_id, key.fingerprint)
        return loaded

    # ------------------------------------------------------------------
    # Unload / change / remove
    # ------------------------------------------------------------------

    async def unload(self, id_or_path: str) -> Key:
        """Remove a key from the agent. Unloading an unloaded key succeeds.

        Raises:
            AgentError: IO if the agent is unreachable (state unchanged)
            UnknownKey: The key is not tracked
        """
        identity_id = self._require(id_or_path).identity_id
        async with self._exclusive(identity_id):
            key = self._require(identity_id)
            self._inflight[identity_id] = KeyState.UNLOADING
            in_agent = True
            try:
                await self._call_agent(self.agent.remove, key.fingerprint)
            except AgentError as e:
                if e.kind != AgentErrorKind.NOT_FOUND:
                    logger.warning("Unloading %s failed: %s", identity_id, e.message)
                    raise
                logger.debug("Key %s was not loaded in the agent", identity_id)
                in_agent = False
            finally:
                self._inflight.pop(identity_id, None)

            if not in_agent and not key.loaded:
                return key

            unloaded = key.model_copy(update={"loaded": False, "state": KeyState.UNLOADED})
            if self._commit(unloaded):
                logger.info("audit.key_unloaded key=%s fingerprint=%s", identity_id, key.fingerprint)
            return unloaded

    async def change_passphrase(self, id_or_path: str, old: str, new: str) -> Key:
        """Re-key a private key file on disk. Agent state is not touched.

        Raises:
            WrongOldPassphrase: The current passphrase is wrong
            KeyIOError: The file cannot be read, parsed or rewritten
            UnknownKey: The key is not tracked
        """
        identity_id = self._require(id_or_path).identity_id
        async with self._exclusive(identity_id):
            key = self._require(identity_id)
            if key.name is None:
                raise KeyIOError("Key has no file on disk")

            files = self.reader.files
            try:
                data = await files.read(key.name)
                rekeyed = await asyncio.to_thread(reencrypt_private_key, data, old, new)
                await files.write(key.name, rekeyed)
            except FileAccessError as e:
                raise KeyIOError(e.message) from e
            except ParseError as e:
                raise KeyIOError(e.message) from e

            updated = key.model_copy(update={"encrypted": bool(new)})
            self._commit(updated)
            logger.info("audit.key_passphrase_changed key=%s", identity_id)
            return updated

    async def remove(self, id_or_path: str) -> Key:
        """Stop tracking a key. The agent is not touched."""
        identity_id = self._require(id_or_path).identity_id
        async with self._exclusive(identity_id):
            key = self._require(identity_id)
            self._drop(identity_id)
            self.notifier.notify()
            logger.info("audit.key_removed key=%s", identity_id)
            return key

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def reconcile(self) -> bool:
        """Resynchronize loaded state with the agent's identity list.

        Keys with an operation in flight are left alone, and so are keys
        changed by an operation that settled while the agent was being
        listed: the listing is older than their state.

        Returns:
            True if anything changed

        Raises:
            AgentError: If the agent cannot be listed
        """
        async with self._reconcile_lock:
            listed_at = dict(self._versions)
            identities = await self._call_agent(self.agent.list)
            in_agent = {identity.fingerprint for identity in identities}
            changed = False

            def settled(identity_id: str) -> bool:
                return (
                    not self._busy(identity_id)
                    and self._versions.get(identity_id) == listed_at.get(identity_id)
                )

            for identity in identities:
                identity_id = identity_for(identity.fingerprint)
                if not settled(identity_id):
                    continue
                changed |= self._commit(self._reconciled_loaded(identity), notify=False)

            for identity_id, key in list(self._keys.items()):
                if key.fingerprint in in_agent or not settled(identity_id):
                    continue
                on_disk = key.name is not None and await self.reader.files.exists(key.name)
                if self._keys.get(identity_id) is not key or not settled(identity_id):
                    continue
                if not on_disk:
                    self._drop(identity_id)
                    logger.info("audit.key_vanished key=%s", identity_id)
                    changed = True
                elif key.loaded:
                    changed |= self._commit(
                        key.model_copy(update={"loaded": False, "state": KeyState.UNLOADED}),
                        notify=False,
                    )

            if changed:
                self.notifier.notify()
            return changed

    def _reconciled_loaded(self, identity: AgentIdentity) -> Key:
        identity_id = identity_for(identity.fingerprint)
        key = self._keys.get(identity_id)
        if key is None:
            return Key(
                identity_id=identity_id,
                fingerprint=identity.fingerprint,
                public_data=identity.public_data,
                comment=identity.comment,
                key_type=identity.key_type,
                loaded=True,
                state=KeyState.LOADED,
            )
        updates: dict[str, Any] = {"loaded": True, "state": KeyState.LOADED}
        if key.comment is None and identity.comment:
            updates["comment"] = identity.comment
        return key.model_copy(update=updates)

    async def discover_default_keys(self) -> bool:
        """Track the default identity files found in the SSH directory.

        Returns:
            True if any key was added
        """
        if self.ssh_dir is None:
            return False

        changed = False
        paths = await asyncio.to_thread(discover, self.ssh_dir, self.default_key_names)
        for path in paths:
            path = _resolve_path(path)
            if self.get(path) is not None:
                continue
            try:
                scanned = await self.reader.scan(path)
            except ParseError as e:
                logger.debug("Skipping default key %s: %s", path, e.message)
                continue
            if scanned.fingerprint is None:
                logger.debug("Skipping default key %s: public key unknown until unlocked", path)
                continue

            identity_id = identity_for(scanned.fingerprint)
            if self._busy(identity_id):
                continue
            key, _tracked = self._candidate(scanned)
            self._paths[path] = identity_id
            changed |= self._commit(key, notify=False)

        if changed:
            self.notifier.notify()
        return changed

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Discover default keys, reconcile once and start the reconciler."""
        await self.discover_default_keys()
        try:
            await self.reconcile()
        except AgentError as e:
            logger.warning("Initial reconciliation failed: %s", e.message)
        if self.reconcile_interval_seconds > 0:
            await self.start_scheduler()

    async def close(self) -> None:
        """End the session. Loaded keys stay in the agent."""
        await self.stop_scheduler()
        self.notifier.close()

    async def start_scheduler(self) -> None:
        """Start in-process periodic reconciliation."""
        if self._scheduler_task is not None and not self._scheduler_task.done():
            return
        self._scheduler_task = asyncio.create_task(self._scheduler_loop())

    async def stop_scheduler(self) -> None:
        """Stop in-process periodic reconciliation."""
        if self._scheduler_task is None:
            return
        self._scheduler_task.cancel()
        try:
            await self._scheduler_task
        except asyncio.CancelledError:
            pass
        finally:
            self._scheduler_task = None

    async def _scheduler_loop(self) -> None:
        while True:
            await asyncio.sleep(self.reconcile_interval_seconds)
            try:
                await self.reconcile()
            except Exception:
                logger.exception("Reconciliation failed, keeping last known state")

    async def __aenter__(self) -> "KeyStore":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require(self, id_or_path: str) -> Key:
        key = self.get(id_or_path)
        if key is None:
            raise UnknownKey(f"Unknown key: {id_or_path}")
        return key

    def _busy(self, lock_key: str) -> bool:
        lock = self._locks.get(lock_key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def _exclusive(self, lock_key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(lock_key, asyncio.Lock())
        if self.busy_policy == "fail" and lock.locked():
            raise Busy("Another operation on this key is in progress")
        self._lock_users[lock_key] = self._lock_users.get(lock_key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            # The last holder or waiter out discards the lock
            self._lock_users[lock_key] -= 1
            if not self._lock_users[lock_key]:
                del self._lock_users[lock_key]
                del self._locks[lock_key]

    def _commit(self, key: Key, notify: bool = True) -> bool:
        """Replace a key in one step; notify only if it actually changed."""
        if self._keys.get(key.identity_id) == key:
            return False
        self._keys[key.identity_id] = key
        self._mutations += 1
        self._versions[key.identity_id] = self._mutations
        if key.name:
            self._paths.setdefault(key.name, key.identity_id)
        if notify:
            self.notifier.notify()
        return True

    def _drop(self, identity_id: str) -> None:
        self._keys.pop(identity_id, None)
        self._versions.pop(identity_id, None)
        for path in [p for p, i in self._paths.items() if i == identity_id]:
            del self._paths[path]

    async def _call_agent(self, call: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        """Invoke the agent, retrying IO failures per retry_delays."""
        attempts = len(self.retry_delays) + 1
        for attempt in range(attempts):
            try:
                return await call(*args)
            except AgentError as e:
                if e.kind != AgentErrorKind.IO or attempt == attempts - 1:
                    raise
                logger.warning(
                    "Agent %s attempt %d/%d failed: %s",
                    getattr(call, "__name__", "call"),
                    attempt + 1,
                    attempts,
                    e.message,
                )
                await asyncio.sleep(self.retry_delays[attempt])
