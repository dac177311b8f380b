# core/tasks/subscription_registry.py
import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, NamedTuple, Optional, Tuple

from loguru import logger

TRADE = "trade"
RESOLUTION = "resolution"

EventHandler = Callable[[str, str, Dict[str, Any]], Awaitable[None]]


class MarketEvent(NamedTuple):
    kind: str
    log: Dict[str, Any]


@dataclass
class MarketSubscription:
    market_address: str
    trade_subscription_id: str
    resolution_subscription_id: str
    channel: "asyncio.Queue[Optional[MarketEvent]]"
    consumer: asyncio.Task


class SubscriptionRegistry:
    """
    Active log subscriptions, one set per market.

    Each market gets an inbound channel fed by ``route`` and drained by a single
    consumer task, so a market's events are handled in delivery order while
    different markets interleave. Mutations hold ``_lock``; readers iterate over
    snapshots.
    """

    def __init__(self, connection, handler: EventHandler, trade_topic: str, resolution_topic: str,
                 on_unsubscribe: Optional[Callable[[str], None]] = None):
        self.connection = connection
        self.handler = handler
        self.on_unsubscribe = on_unsubscribe
        self.trade_topic = trade_topic
        self.resolution_topic = resolution_topic
        self._subscriptions: Dict[str, MarketSubscription] = {}
        self._routes: Dict[str, Tuple[str, str]] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._subscriptions)

    def __contains__(self, market_address: str) -> bool:
        return market_address.lower() in self._subscriptions

    def active_markets(self) -> List[str]:
        return list(self._subscriptions)

    async def ensure_subscribed(self, market_address: str) -> bool:
        """Attach trade and resolution listeners unless the market already has them."""
        key = market_address.lower()
        async with self._lock:
            if key in self._subscriptions:
                return False
            if not self.connection.streaming:
                logger.debug(f"Feed not streaming; deferring subscription for {key}")
                return False

            trade_id = await self.connection.subscribe_logs(key, self.trade_topic)
            try:
                resolution_id = await self.connection.subscribe_logs(key, self.resolution_topic)
            except Exception:
                await self.connection.unsubscribe(trade_id)
                raise

            channel: asyncio.Queue = asyncio.Queue()
            consumer = asyncio.create_task(self._consume(key, channel), name=f"market-{key[:10]}")
            self._subscriptions[key] = MarketSubscription(key, trade_id, resolution_id, channel, consumer)
            self._routes[trade_id] = (key, TRADE)
            self._routes[resolution_id] = (key, RESOLUTION)

        logger.info(f"Listening for trades on market: {key}")
        return True

    def route(self, subscription_id: str, log: Dict[str, Any]) -> bool:
        """Queue a subscription message on its market's channel. False if nobody owns it."""
        target = self._routes.get(subscription_id)
        if target is None:
            return False
        key, kind = target
        subscription = self._subscriptions.get(key)
        if subscription is None:
            return False
        subscription.channel.put_nowait(MarketEvent(kind, log))
        return True

    async def _consume(self, key: str, channel: asyncio.Queue) -> None:
        while True:
            event = await channel.get()
            if event is None:
                return
            try:
                await self.handler(key, event.kind, event.log)
            except Exception as e:
                logger.error(f"Unhandled error processing {event.kind} on market {key}: {e}")

    def _detach(self, key: str) -> Optional[MarketSubscription]:
        subscription = self._subscriptions.pop(key, None)
        if subscription is not None:
            self._routes.pop(subscription.trade_subscription_id, None)
            self._routes.pop(subscription.resolution_subscription_id, None)
        return subscription

    async def _release(self, subscription: MarketSubscription) -> None:
        await self.connection.unsubscribe(subscription.trade_subscription_id)
        await self.connection.unsubscribe(subscription.resolution_subscription_id)
        # Events already queued are still handled, then the consumer exits
        subscription.channel.put_nowait(None)

    async def unsubscribe(self, market_address: str) -> bool:
        key = market_address.lower()
        async with self._lock:
            subscription = self._detach(key)
        if subscription is None:
            return False
        await self._release(subscription)
        if self.on_unsubscribe is not None:
            self.on_unsubscribe(key)
        logger.info(f"Stopped listening on market: {key}")
        return True

    async def reset_all(self) -> List[str]:
        """Drop every subscription at once. Returns the markets that were tracked."""
        async with self._lock:
            detached = [self._detach(key) for key in list(self._subscriptions)]
        for subscription in detached:
            await self._release(subscription)
        addresses = [subscription.market_address for subscription in detached]
        logger.info(f"Cleared {len(addresses)} market subscriptions")
        return addresses

    async def sweep(self, store, stale_days: int) -> int:
        """Unsubscribe markets that are resolved or past their resolution date by ``stale_days``."""
        cutoff = datetime.now(timezone.utc) - timedelta(days=stale_days)
        stale = await store.get_stale_market_addresses(cutoff)
        removed = 0
        for address in stale:
            if address in self and await self.unsubscribe(address):
                removed += 1
        logger.info(f"Listener sweep removed {removed} subscriptions, {len(self)} remain")
        return removed

    async def close(self) -> None:
        """Stop all consumers without waiting for queued events."""
        async with self._lock:
            detached = [self._detach(key) for key in list(self._subscriptions)]
        for subscription in detached:
            subscription.consumer.cancel()
        await asyncio.gather(*(s.consumer for s in detached), return_exceptions=True)
