# core/tasks/connection_manager.py
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from eth_utils import event_abi_to_log_topic
from loguru import logger
from web3 import AsyncHTTPProvider, AsyncWeb3, WebSocketProvider

from core.tasks.abis import find_abi_entry
from core.tasks.errors import FatalStartupError, FeedUnavailableError
from core.tasks.retry import RetryPolicy


def event_topic(abi: List[Dict[str, Any]], event_name: str) -> str:
    return AsyncWeb3.to_hex(event_abi_to_log_topic(find_abi_entry(abi, event_name, entry_type="event")))


class ChainConnectionManager:
    """
    Owns the chain feed connection.

    A WebSocket connection is preferred since it carries log subscriptions. When
    it cannot be established the manager falls back to a read-only HTTP
    connection so state reads keep working; health checks report that mode as
    unhealthy so streaming is retried on the next probe.
    """

    def __init__(self, settings, retry_policy: Optional[RetryPolicy] = None):
        self.ws_url = settings.RPC_WS_URL
        self.http_url = settings.RPC_HTTP_URL
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=settings.CONNECT_MAX_ATTEMPTS,
            backoff_seconds=settings.CONNECT_BACKOFF_SECONDS,
        )
        self.w3: Optional[AsyncWeb3] = None
        self.streaming = False

    async def _open_streaming(self) -> AsyncWeb3:
        w3 = AsyncWeb3(WebSocketProvider(self.ws_url))
        await w3.provider.connect()
        try:
            block = await w3.eth.block_number
        except Exception:
            await w3.provider.disconnect()
            raise
        logger.info(f"WebSocket feed connected. Current block: {block}")
        return w3

    async def _open_degraded(self) -> AsyncWeb3:
        w3 = AsyncWeb3(AsyncHTTPProvider(self.http_url))
        block = await w3.eth.block_number
        logger.warning(f"Running in degraded mode over HTTP (no subscriptions). Current block: {block}")
        return w3

    async def connect(self, streaming: bool = True) -> AsyncWeb3:
        """Connect with bounded retries; fall back to HTTP if streaming never comes up."""
        if streaming:
            try:
                self.w3 = await self.retry_policy.run(self._open_streaming, description="WebSocket connect")
                self.streaming = True
                return self.w3
            except Exception as e:
                logger.error(f"WebSocket feed unavailable after {self.retry_policy.max_attempts} attempts: {e}")

        try:
            self.w3 = await self._open_degraded()
        except Exception as e:
            self.w3 = None
            self.streaming = False
            raise FatalStartupError(f"no chain connection available: {e}") from e
        self.streaming = False
        return self.w3

    async def disconnect(self) -> None:
        if self.w3 is None:
            return
        w3, self.w3 = self.w3, None
        if self.streaming:
            try:
                await w3.provider.disconnect()
            except Exception as e:
                logger.warning(f"Error closing WebSocket feed: {e}")
        self.streaming = False

    async def reconnect(self) -> AsyncWeb3:
        await self.disconnect()
        return await self.connect()

    async def is_alive(self) -> bool:
        """True only for a streaming connection that answers a block-number read."""
        if self.w3 is None or not self.streaming:
            return False
        try:
            await self.w3.eth.block_number
            return True
        except Exception as e:
            logger.warning(f"Liveness check failed: {e}")
            return False

    def _require(self) -> AsyncWeb3:
        if self.w3 is None:
            raise FeedUnavailableError("chain feed is not connected")
        return self.w3

    def contract(self, address: str, abi: List[Dict[str, Any]]):
        w3 = self._require()
        return w3.eth.contract(address=AsyncWeb3.to_checksum_address(address), abi=abi)

    async def get_block_timestamp(self, block_number: int) -> datetime:
        block = await self._require().eth.get_block(block_number)
        return datetime.fromtimestamp(block["timestamp"], tz=timezone.utc)

    async def subscribe_logs(self, address: str, topic: str) -> str:
        if not self.streaming:
            raise FeedUnavailableError("subscriptions need a streaming connection")
        w3 = self._require()
        return await w3.eth.subscribe("logs", {
            "address": AsyncWeb3.to_checksum_address(address),
            "topics": [topic],
        })

    async def unsubscribe(self, subscription_id: str) -> bool:
        if self.w3 is None or not self.streaming:
            return False
        try:
            return await self.w3.eth.unsubscribe(subscription_id)
        except Exception as e:
            # The remote side may already have dropped it with the socket
            logger.debug(f"Unsubscribe {subscription_id} failed: {e}")
            return False

    async def messages(self) -> AsyncIterator[Tuple[str, Dict[str, Any]]]:
        """Yield ``(subscription_id, log)`` for every subscription message on the socket."""
        if not self.streaming:
            raise FeedUnavailableError("no streaming connection to listen on")
        async for payload in self._require().socket.process_subscriptions():
            yield payload["subscription"], payload["result"]
