# core/tasks/maintenance.py
import asyncio

from celery import shared_task
from loguru import logger

from core.tasks.abis import FACTORY_ABI, MARKET_ABI, load_abi
from core.tasks.connection_manager import ChainConnectionManager
from core.tasks.market_sql_indexer import MarketSQLIndexer
from core.tasks.metadata_indexer import MarketMetadataIndexer
from core.tasks.records import normalize_outcome
from settings import settings


async def resolve_outstanding_trades(metadata: MarketMetadataIndexer, store) -> int:
    """
    Fill resolved_outcome for markets that resolved while no listener saw it.

    Only trades whose resolved_outcome is still NULL are touched, so running this
    any number of times is safe. Returns the number of trades updated.
    """
    markets = await store.get_markets_with_unresolved_trades()
    updated = 0

    for market_address in markets:
        try:
            resolved = await metadata.read_view(market_address, "resolved")
            if not resolved:
                logger.info(f"Market {market_address} not resolved yet, skipping.")
                continue

            outcome = normalize_outcome(await metadata.read_view(market_address, "outcome"))
            if outcome is None:
                logger.warning(f"Market {market_address} resolved but outcome() unreadable")
                continue

            count = await store.resolve_trades(market_address, outcome)
            updated += count
            logger.info(f"Updated {count} trades for market {market_address} with outcome {outcome}")
        except Exception as e:
            logger.error(f"Error processing market {market_address}: {e}")

    logger.info(f"Resolved-outcome backfill complete: {updated} trades updated across {len(markets)} markets")
    return updated


async def backfill_resolved_outcomes() -> int:
    store = MarketSQLIndexer(settings)
    connection = ChainConnectionManager(settings)
    metadata = MarketMetadataIndexer(
        settings,
        connection,
        store,
        load_abi(settings.FACTORY_ABI_JSON, FACTORY_ABI),
        load_abi(settings.MARKET_ABI_JSON, MARKET_ABI),
    )

    try:
        await store.connect()
        await connection.connect(streaming=False)
        return await resolve_outstanding_trades(metadata, store)
    finally:
        await connection.disconnect()
        await store.close()


@shared_task(name="maintenance.backfill_resolved_outcomes")
def run_resolved_outcome_backfill():
    """Celery task wrapping the resolved-outcome backfill"""
    logger.info("Starting resolved-outcome backfill task")

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    try:
        updated = loop.run_until_complete(backfill_resolved_outcomes())
        logger.info("Resolved-outcome backfill task completed")
        return updated
    except Exception as e:
        logger.error(f"Error in resolved-outcome backfill task: {e}")
        raise
    finally:
        loop.close()


if __name__ == "__main__":
    asyncio.run(backfill_resolved_outcomes())
