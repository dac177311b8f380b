# core/tasks/market_sql_indexer.py
import asyncio
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import asyncpg
from loguru import logger

from core.tasks.errors import FatalStartupError
from core.tasks.records import MarketRecord, TradeRecord
from core.tasks.retry import RetryPolicy

T = TypeVar("T")

SCHEMA_PATH = Path(__file__).resolve().parents[2] / "schema.sql"

# Errors raised by the pool itself rather than by a statement; worth retrying.
POOL_ERRORS = (
    asyncpg.PostgresConnectionError,
    asyncpg.InterfaceError,
    asyncpg.TooManyConnectionsError,
    asyncio.TimeoutError,
    ConnectionError,
)

MARKET_COLUMNS = (
    "address", "prediction_id", "question", "description", "category", "rule",
    "status", "resolution_date", "resolved", "winning_outcome", "yes_pool",
    "no_pool", "volume", "trade_count", "creator_fid", "total_shares",
)

TRADE_COLUMNS = (
    "tx_hash", "block_number", "user_address", "market_address", "outcome",
    "amount", "shares", "creator_fee", "platform_fee", "timestamp", "fid",
    "prediction_id", "resolved_outcome", "user_outcome",
)


def _placeholders(count: int) -> str:
    return ", ".join(f"${i}" for i in range(1, count + 1))


def _affected_rows(status: str) -> int:
    # asyncpg returns the command tag, e.g. "INSERT 0 1" or "UPDATE 3"
    try:
        return int(status.split()[-1])
    except (AttributeError, IndexError, ValueError):
        return 0


def _numeric(value: Optional[int]) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None


class MarketSQLIndexer:
    """
    PostgreSQL adapter for the markets and trades tables.

    This is the only place records are converted to and from database rows.
    """

    def __init__(self, settings, retry_policy: Optional[RetryPolicy] = None):
        self.database_url = settings.DATABASE_URL
        self.min_size = settings.DB_POOL_MIN_SIZE
        self.max_size = settings.DB_POOL_MAX_SIZE
        self.idle_seconds = settings.DB_POOL_IDLE_SECONDS
        self.acquire_timeout = settings.DB_ACQUIRE_TIMEOUT_SECONDS
        self.command_timeout = settings.DB_COMMAND_TIMEOUT
        self.auto_apply_schema = settings.AUTO_APPLY_SCHEMA
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=settings.DB_MAX_RETRY_ATTEMPTS,
            backoff_seconds=1.0,
            retry_on=POOL_ERRORS,
        )
        self.pool: Optional[asyncpg.Pool] = None

    async def connect(self):
        try:
            self.pool = await self.retry_policy.run(
                lambda: asyncpg.create_pool(
                    self.database_url,
                    min_size=self.min_size,
                    max_size=self.max_size,
                    command_timeout=self.command_timeout,
                    max_inactive_connection_lifetime=self.idle_seconds,
                ),
                description="PostgreSQL connect",
            )
            logger.info("Connected to PostgreSQL database")
        except Exception as e:
            logger.error(f"Failed to connect to PostgreSQL: {e}")
            raise FatalStartupError(f"datastore unreachable: {e}") from e

        if self.auto_apply_schema:
            await self.apply_schema()

    async def close(self):
        if self.pool:
            await self.pool.close()
            self.pool = None
            logger.info("PostgreSQL connection pool closed")

    async def apply_schema(self, path: Path = SCHEMA_PATH) -> None:
        sql = path.read_text(encoding="utf-8")
        await self._with_connection(lambda conn: conn.execute(sql), "apply schema")
        logger.info(f"Applied schema from {path.name}")

    async def _with_connection(self, statement: Callable[[asyncpg.Connection], Awaitable[T]],
                               description: str) -> T:
        async def attempt():
            async with self.pool.acquire(timeout=self.acquire_timeout) as conn:
                return await statement(conn)

        return await self.retry_policy.run(attempt, description=description)

    # ---- markets ----

    async def upsert_market(self, market: MarketRecord) -> None:
        args = [
            market.address, market.prediction_id, market.question, market.description,
            market.category, market.rule, market.status, market.resolution_date,
            market.resolved, market.winning_outcome, market.yes_pool, market.no_pool,
            market.volume, market.trade_count, market.creator_fid, _numeric(market.total_shares),
        ]
        updates = ",\n".join(
            f"{column} = COALESCE(EXCLUDED.{column}, markets.{column})"
            for column in MARKET_COLUMNS
            if column not in ("address", "resolved")
        )
        query = f"""
            INSERT INTO markets ({", ".join(MARKET_COLUMNS)})
            VALUES ({_placeholders(len(MARKET_COLUMNS))})
            ON CONFLICT (address) DO UPDATE SET
                resolved = markets.resolved OR EXCLUDED.resolved,
                {updates},
                updated_at = NOW()
        """
        await self._with_connection(lambda conn: conn.execute(query, *args),
                                    f"upsert market {market.address[:10]}")
        logger.debug(f"Upserted market {market.address[:10]}...")

    async def get_market(self, address: str) -> Optional[MarketRecord]:
        row = await self._with_connection(
            lambda conn: conn.fetchrow(
                f"SELECT {', '.join(MARKET_COLUMNS)} FROM markets WHERE address = $1",
                address.lower(),
            ),
            f"get market {address[:10]}",
        )
        if row is None:
            return None
        data = dict(row)
        if data["total_shares"] is not None:
            data["total_shares"] = int(data["total_shares"])
        return MarketRecord(**data)

    async def get_stale_market_addresses(self, cutoff: datetime) -> List[str]:
        """Markets that are resolved or whose resolution date is older than ``cutoff``."""
        rows = await self._with_connection(
            lambda conn: conn.fetch("""
                SELECT address FROM markets
                WHERE resolved = TRUE OR resolution_date < $1
            """, cutoff),
            "select stale markets",
        )
        return [row["address"] for row in rows]

    async def get_live_markets(self, limit: int = 100) -> List[Dict[str, Any]]:
        rows = await self._with_connection(
            lambda conn: conn.fetch(f"""
                SELECT {', '.join(MARKET_COLUMNS)}, updated_at FROM markets
                WHERE resolved = FALSE
                ORDER BY volume DESC NULLS LAST
                LIMIT $1
            """, limit),
            "select live markets",
        )
        return [dict(row) for row in rows]

    # ---- trades ----

    async def insert_trade(self, trade: TradeRecord) -> bool:
        """Insert a trade unless its tx_hash is already stored. Returns True when a row was written."""
        args = [
            trade.tx_hash, trade.block_number, trade.user_address, trade.market_address,
            trade.outcome, _numeric(trade.amount), _numeric(trade.shares),
            _numeric(trade.creator_fee), _numeric(trade.platform_fee), trade.timestamp,
            trade.fid, trade.prediction_id, trade.resolved_outcome, trade.user_outcome,
        ]
        query = f"""
            INSERT INTO trades ({", ".join(TRADE_COLUMNS)})
            VALUES ({_placeholders(len(TRADE_COLUMNS))})
            ON CONFLICT (tx_hash) DO NOTHING
        """
        status = await self._with_connection(lambda conn: conn.execute(query, *args),
                                             f"insert trade {trade.tx_hash[:10]}")
        return _affected_rows(status) == 1

    async def resolve_trades(self, market_address: str, outcome: int) -> int:
        """Set resolved_outcome on every still-unresolved trade of a market. Returns rows updated."""
        status = await self._with_connection(
            lambda conn: conn.execute("""
                UPDATE trades SET resolved_outcome = $1
                WHERE market_address = $2 AND resolved_outcome IS NULL
            """, outcome, market_address.lower()),
            f"resolve trades {market_address[:10]}",
        )
        return _affected_rows(status)

    async def get_markets_with_unresolved_trades(self) -> List[str]:
        rows = await self._with_connection(
            lambda conn: conn.fetch(
                "SELECT DISTINCT market_address FROM trades WHERE resolved_outcome IS NULL"
            ),
            "select markets with unresolved trades",
        )
        return [row["market_address"] for row in rows]

    async def get_user_trades(self, user_address: str, limit: int = 100) -> List[Dict[str, Any]]:
        rows = await self._with_connection(
            lambda conn: conn.fetch("""
                SELECT * FROM trades WHERE user_address = $1
                ORDER BY timestamp DESC
                LIMIT $2
            """, user_address.lower(), limit),
            f"select trades for {user_address[:10]}",
        )
        return [dict(row) for row in rows]
