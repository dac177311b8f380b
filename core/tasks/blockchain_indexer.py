# core/tasks/blockchain_indexer.py
import asyncio
from typing import Dict, Iterable, List, Optional, Set

from loguru import logger

from core.tasks.abis import (
    FACTORY_ABI,
    MARKET_ABI,
    MARKET_CREATED_EVENT,
    RESOLUTION_EVENT,
    TRADE_EVENT,
    load_abi,
)
from core.tasks.connection_manager import ChainConnectionManager, event_topic
from core.tasks.event_pipeline import EventIngestionPipeline
from core.tasks.market_sql_indexer import MarketSQLIndexer
from core.tasks.metadata_indexer import MarketMetadataIndexer
from core.tasks.subscription_registry import SubscriptionRegistry
from settings import settings


class PredictionMarketIndexer:
    """
    Coordinates the indexer: backfill, factory listener, message dispatch,
    health probe, listener sweep and the reset-on-failure sequence.
    """

    def __init__(self, settings, store=None, connection=None):
        self.settings = settings
        self.factory_abi = load_abi(settings.FACTORY_ABI_JSON, FACTORY_ABI)
        self.market_abi = load_abi(settings.MARKET_ABI_JSON, MARKET_ABI)

        self.store = store or MarketSQLIndexer(settings)
        self.connection = connection or ChainConnectionManager(settings)
        self.metadata = MarketMetadataIndexer(
            settings, self.connection, self.store, self.factory_abi, self.market_abi
        )
        self.pipeline = EventIngestionPipeline(
            self.connection, self.metadata, self.store, on_failure=self.request_health_check
        )
        self.registry = SubscriptionRegistry(
            self.connection,
            self.pipeline.handle,
            trade_topic=event_topic(self.market_abi, TRADE_EVENT),
            resolution_topic=event_topic(self.market_abi, RESOLUTION_EVENT),
            on_unsubscribe=self.metadata.forget_market,
        )
        self.pipeline.registry = self.registry
        self.market_created_topic = event_topic(self.factory_abi, MARKET_CREATED_EVENT)

        self._factory_subscription_id: Optional[str] = None
        self._listener: Optional[asyncio.Task] = None
        self._timers: List[asyncio.Task] = []
        self._background: Set[asyncio.Task] = set()
        self._health_check_requested = asyncio.Event()
        self._reset_lock = asyncio.Lock()
        self._needs_reset = False
        self._unrestored: Set[str] = set()
        self._stopping = False

    async def initialize(self):
        await self.store.connect()
        await self.connection.connect()
        self.metadata.bind()
        await self._subscribe_factory()
        self._start_listener()
        await self.backfill()

    async def run_forever(self):
        self._timers = [
            asyncio.create_task(self._health_loop(), name="health-probe"),
            asyncio.create_task(self._sweep_loop(), name="listener-sweep"),
        ]
        await asyncio.gather(*self._timers)

    async def cleanup(self):
        self._stopping = True
        for task in [*self._timers, *self._background]:
            task.cancel()
        await self._stop_listener()
        await self.registry.close()
        await self.connection.disconnect()
        await self.store.close()

    # ---- backfill ----

    async def backfill(self) -> List[str]:
        """Rebuild market rows and subscriptions from the factory's market list."""
        markets = await self.metadata.list_factory_markets()
        records = await self.metadata.backfill_markets(markets)
        resolved = {record.address for record in records if record.resolved}

        for address in resolved:
            if address in self.registry:
                await self.registry.unsubscribe(address)
        rejected = await self._subscribe_markets(address for address in markets if address not in resolved)
        if rejected:
            # Picked up again by the next health probe
            self._needs_reset = True

        logger.info(f"Backfill complete: {len(markets)} markets, {len(self.registry)} subscribed")
        return markets

    async def _subscribe_markets(self, addresses: Iterable[str]) -> List[str]:
        """Subscribe each market, carrying on past rejections. Returns the rejected ones."""
        failed = []
        for address in addresses:
            try:
                await self.registry.ensure_subscribed(address)
            except Exception as e:
                logger.error(f"Could not subscribe to market {address}: {e}")
                failed.append(address)
        return failed

    async def on_market_created(self, market_address: str) -> None:
        await self.metadata.refresh_market(market_address)
        await self.registry.ensure_subscribed(market_address)

    # ---- feed listener ----

    async def _subscribe_factory(self) -> None:
        if not self.connection.streaming:
            return
        self._factory_subscription_id = await self.connection.subscribe_logs(
            self.settings.FACTORY_ADDRESS, self.market_created_topic
        )
        logger.info(f"Listening for new markets on factory {self.settings.FACTORY_ADDRESS}")

    async def _unsubscribe_factory(self) -> None:
        if self._factory_subscription_id is not None:
            await self.connection.unsubscribe(self._factory_subscription_id)
            self._factory_subscription_id = None

    def _start_listener(self) -> None:
        if self._listener is not None and not self._listener.done():
            return
        if self.connection.streaming:
            self._listener = asyncio.create_task(self._listen(), name="feed-listener")

    async def _stop_listener(self) -> None:
        if self._listener is None:
            return
        listener, self._listener = self._listener, None
        listener.cancel()
        await asyncio.gather(listener, return_exceptions=True)

    def dispatch(self, subscription_id: str, log: Dict) -> None:
        if subscription_id == self._factory_subscription_id:
            task = asyncio.create_task(self._handle_market_created(log))
            self._background.add(task)
            task.add_done_callback(self._background.discard)
        elif not self.registry.route(subscription_id, log):
            logger.debug(f"Message for unknown subscription {subscription_id}")

    async def _listen(self) -> None:
        try:
            async for subscription_id, log in self.connection.messages():
                self.dispatch(subscription_id, log)
            logger.warning("Subscription stream ended")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Subscription stream failed: {e}")
        self.request_health_check()

    async def _handle_market_created(self, log: Dict) -> None:
        try:
            event = getattr(self.metadata.factory.events, MARKET_CREATED_EVENT)().process_log(log)
            market_address = event["args"]["market"].lower()
            logger.info(f"New market created at: {market_address}")
            await self.on_market_created(market_address)
        except Exception as e:
            logger.error(f"Error handling {MARKET_CREATED_EVENT}: {e!r}")
            self.request_health_check()

    # ---- health and reset ----

    def request_health_check(self) -> None:
        self._health_check_requested.set()

    async def check_health(self) -> bool:
        if not self._needs_reset and await self.connection.is_alive():
            logger.debug("Chain feed healthy")
            return True
        if self._needs_reset:
            logger.warning("Previous rebuild incomplete; resetting")
        else:
            logger.warning("Chain feed unhealthy; resetting")
        try:
            await self.reset()
        except Exception as e:
            logger.error(f"Reset failed, will retry on next probe: {e}")
        return False

    async def reset(self) -> None:
        """Tear everything down and rebuild it on a fresh connection, in order."""
        if self._reset_lock.locked():
            logger.info("Reset already in progress")
            return
        async with self._reset_lock:
            # Until the rebuild finishes the next probe must reset again
            self._needs_reset = True
            tracked = set(await self.registry.reset_all()) | self._unrestored
            await self._unsubscribe_factory()
            await self._stop_listener()

            try:
                await self.connection.reconnect()
                self.metadata.bind()

                await self._subscribe_factory()
                await self._subscribe_markets(sorted(tracked))
                self._start_listener()

                self._needs_reset = False
                await self.backfill()
            except Exception:
                self._needs_reset = True
                self._unrestored = tracked
                raise
            finally:
                self._start_listener()

            self._unrestored = set()
            logger.info(f"Reset complete: {len(self.registry)} markets subscribed")

    async def _health_loop(self) -> None:
        interval = self.settings.HEALTH_CHECK_INTERVAL_SECONDS
        while not self._stopping:
            try:
                await asyncio.wait_for(self._health_check_requested.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
            self._health_check_requested.clear()
            await self.check_health()

    async def _sweep_loop(self) -> None:
        while not self._stopping:
            await asyncio.sleep(self.settings.SWEEP_INTERVAL_SECONDS)
            try:
                await self.registry.sweep(self.store, self.settings.STALE_MARKET_DAYS)
            except Exception as e:
                logger.warning(f"Listener sweep failed: {e}")


async def index_prediction_markets():
    """Main async indexing function"""
    indexer = PredictionMarketIndexer(settings)

    try:
        await indexer.initialize()
        await indexer.run_forever()
    finally:
        await indexer.cleanup()


if __name__ == "__main__":
    asyncio.run(index_prediction_markets())
