# core/tasks/event_pipeline.py
import asyncio
from typing import Any, Callable, Dict, Optional

from loguru import logger
from web3 import AsyncWeb3

from core.tasks.abis import TRADE_EVENT
from core.tasks.records import TradeNotification, TradeRecord, normalize_outcome
from core.tasks.subscription_registry import RESOLUTION, TRADE


class EventIngestionPipeline:
    """Turns market notifications into trades rows and market refreshes."""

    def __init__(self, connection, metadata, store, registry=None,
                 on_failure: Optional[Callable[[], None]] = None):
        self.connection = connection
        self.metadata = metadata
        self.store = store
        self.registry = registry
        self.on_failure = on_failure

    async def handle(self, market_address: str, kind: str, log: Dict[str, Any]) -> None:
        """Entry point for the per-market consumer. Never raises."""
        try:
            if kind == TRADE:
                await self.process_trade(self.decode_trade(market_address, log))
            elif kind == RESOLUTION:
                await self.process_resolution(market_address)
            else:
                logger.warning(f"Unknown event kind '{kind}' on market {market_address}")
        except Exception as e:
            tx_hash = log.get("transactionHash") if isinstance(log, dict) else None
            logger.error(f"Error handling {kind} event on market {market_address} (tx {tx_hash}): {e!r}")
            # Failures here usually mean the feed is broken
            if self.on_failure is not None:
                self.on_failure()

    def decode_trade(self, market_address: str, log: Dict[str, Any]) -> TradeNotification:
        contract = self.metadata.market_contract(market_address)
        event = getattr(contract.events, TRADE_EVENT)().process_log(log)
        args = event["args"]
        return TradeNotification(
            market_address=market_address,
            tx_hash=AsyncWeb3.to_hex(event["transactionHash"]),
            block_number=event["blockNumber"],
            user=args["user"],
            outcome=args["outcome"],
            amount=args["amount"],
            shares=args["shares"],
            creator_fee=args["creatorFee"],
            platform_fee=args["platformFee"],
        )

    async def process_trade(self, trade: TradeNotification) -> bool:
        """Store one trade (insert-or-skip on tx_hash) and refresh its market. True if a row was written."""
        market = trade.market_address
        timestamp = await self.connection.get_block_timestamp(trade.block_number)

        fid, prediction_id, resolved, outcome = await asyncio.gather(
            self.metadata.read_view(market, "userFid", AsyncWeb3.to_checksum_address(trade.user)),
            self.metadata.read_view(market, "predictionId"),
            self.metadata.read_view(market, "resolved"),
            self.metadata.read_view(market, "outcome"),
        )

        record = TradeRecord(
            tx_hash=trade.tx_hash,
            block_number=trade.block_number,
            user_address=trade.user,
            market_address=market,
            outcome=trade.outcome,
            amount=trade.amount,
            shares=trade.shares,
            creator_fee=trade.creator_fee,
            platform_fee=trade.platform_fee,
            timestamp=timestamp,
            fid=str(fid) if fid else None,
            prediction_id=str(prediction_id) if prediction_id is not None else None,
            resolved_outcome=normalize_outcome(outcome) if resolved else None,
            user_outcome=trade.outcome,
        )

        inserted = await self.store.insert_trade(record)
        if inserted:
            logger.info(f"Trade indexed: {trade.tx_hash[:10]}... on market {market}")
        else:
            logger.debug(f"Duplicate trade {trade.tx_hash[:10]}... skipped")

        await self.metadata.refresh_market(market)
        return inserted

    async def process_resolution(self, market_address: str) -> int:
        """Back-fill resolved_outcome for the market's trades and stop listening. Returns rows updated."""
        await self.metadata.refresh_market(market_address)
        market = await self.store.get_market(market_address)

        if market is None or not market.resolved:
            logger.warning(f"Resolution event for {market_address} but market does not read as resolved yet")
            return 0
        if market.winning_outcome is None:
            logger.warning(f"Market {market_address} resolved without a readable winning outcome")
            return 0

        outcome = normalize_outcome(market.winning_outcome)
        updated = await self.store.resolve_trades(market_address, outcome)
        logger.info(f"Market resolved: {market_address} outcome={outcome}, updated {updated} trades")

        if self.registry is not None:
            await self.registry.unsubscribe(market_address)
        return updated
