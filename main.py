import asyncio
import sys

from loguru import logger

from core.log_setup import setup_logging
from core.tasks.blockchain_indexer import PredictionMarketIndexer
from core.tasks.errors import FatalStartupError
from settings import settings


async def run():
    indexer = PredictionMarketIndexer(settings)
    try:
        await indexer.initialize()
        logger.info("Indexer initialized; entering event loop")
        await indexer.run_forever()
    finally:
        await indexer.cleanup()


def main():
    """Main entry point for the market indexer."""
    setup_logging(settings)

    try:
        logger.info("Starting prediction market indexer")
        asyncio.run(run())

    except KeyboardInterrupt:
        logger.info("Indexer stopped by user")
        sys.exit(0)
    except FatalStartupError as e:
        logger.error(f"Fatal startup error: {e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Indexer error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
