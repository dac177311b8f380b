import asyncio
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, Dict, List

import uvicorn
from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

from api.identity_client import IdentityClient
from core.log_setup import setup_logging
from core.tasks.market_sql_indexer import MarketSQLIndexer
from settings import settings

store = MarketSQLIndexer(settings)
identity = IdentityClient(
    settings.IDENTITY_API_URL,
    api_key=settings.IDENTITY_API_KEY,
    timeout=settings.IDENTITY_TIMEOUT_SECONDS,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await store.connect()
    try:
        yield
    finally:
        await identity.close()
        await store.close()


app = FastAPI(
    title="Prediction Market Indexer API",
    description="Read-only access to indexed markets and trades",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _jsonable(row: Dict[str, Any]) -> Dict[str, Any]:
    # wei-sized NUMERICs lose precision as floats; send them as strings
    return {
        key: (str(value) if isinstance(value, Decimal) else value)
        for key, value in row.items()
    }


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "service": "prediction-market-indexer"}


@app.get("/api/user-trades/{address}")
async def get_user_trades(address: str) -> List[Dict[str, Any]]:
    """Latest trades for a wallet, newest first"""
    if not address.startswith("0x") or len(address) != 42:
        raise HTTPException(status_code=400, detail="Invalid address")

    rows = await store.get_user_trades(address.lower(), limit=100)
    names = await asyncio.gather(*(identity.get_display_name(row.get("fid")) for row in rows))

    trades = []
    for row, name in zip(rows, names):
        trade = _jsonable(row)
        trade["display_name"] = name
        trades.append(trade)
    return trades


@app.get("/api/markets/live")
async def get_live_markets(limit: int = Query(100, ge=1, le=500)) -> List[Dict[str, Any]]:
    """Unresolved markets ordered by volume"""
    rows = await store.get_live_markets(limit=limit)
    return [_jsonable(row) for row in rows]


if __name__ == "__main__":
    setup_logging(settings)
    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
