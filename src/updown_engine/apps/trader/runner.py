"""Channel-based orchestration of the trading engine.

External producers (tick feeds, the user fill feed) each run as their own
task and publish typed events onto one ``asyncio.Queue``.  A single
consumer applies events to the strategy in arrival order, so ledger
mutations for one logical order always happen in lifecycle order.
"""

import asyncio
import logging
import signal
from collections.abc import Awaitable, Callable, Iterable

from updown_engine.apps.trader.models import Fill, MarketRetired, MarketTick
from updown_engine.apps.trader.strategy import MispricingStrategy
from updown_engine.apps.trader.user_feed import UserFeed

logger = logging.getLogger(__name__)

RunnerEvent = MarketTick | Fill | MarketRetired
Producer = Callable[["asyncio.Queue[RunnerEvent]"], Awaitable[None]]

_POLL_SECONDS = 1.0
_DEFAULT_QUEUE_SIZE = 10_000


def _log_task_exception(task: "asyncio.Task[None]") -> None:
    """Log the exception of a background task that crashed."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Background task %s crashed", task.get_name(), exc_info=exc)


class TradingRunner:
    """Own the event channel and drive the strategy from it.

    Args:
        strategy: Strategy receiving ticks, fills and retirements.
        user_feed: Optional fill feed started alongside the producers.
        stale_cleanup_interval: Seconds between stale in-flight sweeps.
        queue_size: Channel capacity; producers wait when it is full.

    """

    def __init__(
        self,
        strategy: MispricingStrategy,
        *,
        user_feed: UserFeed | None = None,
        stale_cleanup_interval: float = 60.0,
        queue_size: int = _DEFAULT_QUEUE_SIZE,
    ) -> None:
        """Initialize the runner with an empty channel."""
        self._strategy = strategy
        self._user_feed = user_feed
        self._stale_cleanup_interval = stale_cleanup_interval
        self._channel: asyncio.Queue[RunnerEvent] = asyncio.Queue(maxsize=queue_size)
        self._shutdown = asyncio.Event()
        self._processed = 0

    @property
    def channel(self) -> "asyncio.Queue[RunnerEvent]":
        """Return the queue producers publish onto."""
        return self._channel

    @property
    def processed(self) -> int:
        """Return the number of events applied so far."""
        return self._processed

    async def publish(self, event: RunnerEvent) -> None:
        """Put one event on the channel, waiting if it is full."""
        await self._channel.put(event)

    def request_shutdown(self) -> None:
        """Stop the consumer loop after the current event."""
        logger.info("Shutdown signal received")
        self._shutdown.set()

    async def process(self, event: RunnerEvent) -> None:
        """Apply one event to the strategy."""
        if isinstance(event, MarketTick):
            if self._user_feed is not None:
                self._user_feed.track(
                    event.market_id, event.asset, event.up.token_id, event.down.token_id
                )
            await self._strategy.on_tick(event)
        elif isinstance(event, Fill):
            self._strategy.on_fill(event)
        else:
            self._strategy.cleanup_market(event.market_id, event.asset)
            if self._user_feed is not None:
                self._user_feed.untrack(event.market_id)
        self._processed += 1

    async def drain(self) -> int:
        """Apply every event currently queued and return how many were applied."""
        count = 0
        while not self._channel.empty():
            await self.process(self._channel.get_nowait())
            count += 1
        return count

    async def run(self, producers: Iterable[Producer] = ()) -> None:
        """Consume the channel until SIGINT/SIGTERM or ``request_shutdown``.

        Args:
            producers: Coroutine functions that publish onto the channel;
                each runs as its own task.

        """
        loop = asyncio.get_running_loop()
        loop.add_signal_handler(signal.SIGINT, self.request_shutdown)
        loop.add_signal_handler(signal.SIGTERM, self.request_shutdown)

        tasks: list[asyncio.Task[None]] = []
        for i, producer in enumerate(producers):
            tasks.append(asyncio.create_task(producer(self._channel), name=f"producer-{i}"))
        if self._user_feed is not None:
            tasks.append(
                asyncio.create_task(self._user_feed.publish_to(self._channel), name="user-feed")
            )
        tasks.append(asyncio.create_task(self._periodic_cleanup(), name="stale-cleanup"))
        for task in tasks:
            task.add_done_callback(_log_task_exception)

        logger.info("Trading runner started with %d background tasks", len(tasks))
        try:
            while not self._shutdown.is_set():
                try:
                    event = await asyncio.wait_for(self._channel.get(), timeout=_POLL_SECONDS)
                except TimeoutError:
                    continue
                try:
                    await self.process(event)
                except Exception:
                    logger.exception("Failed to apply %s", type(event).__name__)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            if self._user_feed is not None:
                await self._user_feed.close()
            logger.info(
                "Trading runner stopped after %d events: %s",
                self._processed,
                self._strategy.get_stats(),
            )

    async def _periodic_cleanup(self) -> None:
        """Release in-flight order slots that outlived the stale timeout."""
        while not self._shutdown.is_set():
            await asyncio.sleep(self._stale_cleanup_interval)
            released = await self._strategy.cleanup_stale_orders()
            if released:
                logger.info("Released %d stale in-flight orders", released)
