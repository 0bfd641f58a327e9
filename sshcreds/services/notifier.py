"""Coalescing "store changed" signal channel."""

import asyncio
import logging

from sshcreds.models import ChangeEvent

logger = logging.getLogger(__name__)


class Subscription:
    """One observer's view of the change stream.

    Holds at most one undelivered event. Events arriving while one is
    pending are dropped, so a slow observer never blocks the producer.
    Iterate with ``async for``; iteration ends once the subscription is
    closed.
    """

    def __init__(self, notifier: "ChangeNotifier"):
        self._notifier = notifier
        self._pending: ChangeEvent | None = None
        self._wakeup = asyncio.Event()
        self._closed = False
        self.dropped = 0

    @property
    def pending(self) -> bool:
        return self._pending is not None

    @property
    def closed(self) -> bool:
        return self._closed

    def _offer(self, event: ChangeEvent) -> None:
        if self._closed:
            return
        if self._pending is not None:
            self.dropped += 1
            return
        self._pending = event
        self._wakeup.set()

    def get_nowait(self) -> ChangeEvent | None:
        """Take the pending event without waiting."""
        event, self._pending = self._pending, None
        return event

    async def get(self) -> ChangeEvent | None:
        """Wait for the next event; returns None once closed."""
        while self._pending is None:
            if self._closed:
                return None
            self._wakeup.clear()
            await self._wakeup.wait()
        return self.get_nowait()

    def close(self) -> None:
        """Stop receiving events. Not restartable."""
        if self._closed:
            return
        self._closed = True
        self._notifier._unsubscribe(self)
        self._wakeup.set()

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ChangeEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class ChangeNotifier:
    """Single-writer, multi-reader change channel.

    All ``notify()`` calls made within one event loop tick are delivered
    as a single ChangeEvent with the next generation number.
    """

    def __init__(self):
        self._subscriptions: list[Subscription] = []
        self._generation = 0
        self._flush_scheduled = False

    @property
    def generation(self) -> int:
        """Number of events emitted so far."""
        return self._generation

    def subscribe(self) -> Subscription:
        subscription = Subscription(self)
        self._subscriptions.append(subscription)
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def notify(self) -> None:
        """Signal a change; coalesced with any other signal in this tick."""
        if self._flush_scheduled:
            return
        self._flush_scheduled = True
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._flush()
            return
        loop.call_soon(self._flush)

    def _flush(self) -> None:
        self._flush_scheduled = False
        self._generation += 1
        event = ChangeEvent(generation=self._generation)
        logger.debug("Emitting change event %d to %d observer(s)", event.generation, len(self._subscriptions))
        for subscription in list(self._subscriptions):
            subscription._offer(event)

    def close(self) -> None:
        """Close every subscription."""
        for subscription in list(self._subscriptions):
            subscription.close()
