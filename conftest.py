"""Shared fakes and fixtures for the indexer tests."""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

import pytest
from eth_abi import encode as abi_encode
from web3.exceptions import ContractLogicError

from core.tasks.abis import FACTORY_ABI, MARKET_ABI, find_abi_entry
from core.tasks.blockchain_indexer import PredictionMarketIndexer
from core.tasks.records import MarketRecord
from settings import Settings

FACTORY = "0x" + "f" * 40
MULTICALL = "0x" + "c" * 40
USER = "0x" + "1" * 40
OTHER_USER = "0x" + "2" * 40
BLOCK_TIME = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def market_address(index: int) -> str:
    return "0x" + f"{0xa000 + index:040x}"


def tx_hash(prefix: str) -> bytes:
    return bytes.fromhex(prefix.ljust(64, "0"))


def default_market_state(**overrides) -> Dict[str, Any]:
    state = {
        "predictionId": 42,
        "question": "Will it rain in Lisbon tomorrow?",
        "description": "Resolves YES if IPMA reports rainfall.",
        "category": "weather",
        "rule": "IPMA daily report",
        "status": 0,
        "resolutionDate": int((BLOCK_TIME + timedelta(days=7)).timestamp()),
        "resolved": False,
        "outcome": 0,
        "yesPool": 10 ** 18,
        "noPool": 2 * 10 ** 18,
        "volume": 3 * 10 ** 18,
        "tradeCount": 3,
        "creatorFid": 1234,
        "totalShares": 5 * 10 ** 18,
    }
    state.update(overrides)
    return state


def _output_types(view: str) -> List[str]:
    abi = FACTORY_ABI if view in ("marketCount", "markets") else MARKET_ABI
    return [output["type"] for output in find_abi_entry(abi, view)["outputs"]]


async def settle(rounds: int = 200) -> None:
    """Let queued tasks run until the fakes have nothing left to do."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeChain:
    """Contract state for one factory and its markets."""

    def __init__(self):
        self.markets: Dict[str, Dict[str, Any]] = {}
        self.factory_markets: List[str] = []
        self.user_fids: Dict[str, int] = {}
        self.journal: List[Any] = []
        self.single_calls = 0
        self.aggregate_calls = 0
        self.broken = False

    def add_market(self, address: str, **overrides) -> Dict[str, Any]:
        state = default_market_state(**overrides)
        self.markets[address.lower()] = state
        self.factory_markets.append(address.lower())
        return state

    def read(self, address: str, view: str, args) -> Any:
        if self.broken:
            raise ConnectionError("feed down")
        if view == "marketCount":
            return len(self.factory_markets)
        if view == "markets":
            return self.factory_markets[args[0]]
        if view == "userFid":
            return self.user_fids.get(args[0].lower(), 0)
        state = self.markets.get(address.lower())
        if state is None or view not in state:
            raise ContractLogicError("execution reverted")
        return state[view]


class _FakeCall:
    def __init__(self, chain, address, view, args):
        self.chain = chain
        self.address = address
        self.view = view
        self.args = args

    async def call(self):
        self.chain.single_calls += 1
        return self.chain.read(self.address, self.view, self.args)


class _FakeFunctions:
    def __init__(self, chain, address):
        self._chain = chain
        self._address = address

    def __getattr__(self, view):
        return lambda *args: _FakeCall(self._chain, self._address, view, args)


class _FakeEvent:
    def process_log(self, log):
        return log


class _FakeEvents:
    def __getattr__(self, name):
        return _FakeEvent


class FakeContract:
    def __init__(self, chain, address):
        self.address = address
        self.functions = _FakeFunctions(chain, address)
        self.events = _FakeEvents()

    def encode_abi(self, view, args=None):
        return json.dumps([view, list(args or [])]).encode()


class _FakeAggregate:
    def __init__(self, chain, payload):
        self.chain = chain
        self.payload = payload

    async def call(self):
        self.chain.aggregate_calls += 1
        self.chain.journal.append("aggregate")
        if self.chain.broken:
            raise ConnectionError("feed down")
        results = []
        for target, allow_failure, data in self.payload:
            assert allow_failure is True
            view, args = json.loads(data)
            try:
                value = self.chain.read(target, view, args)
            except ContractLogicError:
                results.append((False, b""))
                continue
            results.append((True, abi_encode(_output_types(view), [value])))
        return results


class FakeMulticall:
    def __init__(self, chain):
        self.chain = chain
        self.functions = self

    def aggregate3(self, payload):
        return _FakeAggregate(self.chain, payload)


class FakeConnection:
    """Stands in for ChainConnectionManager."""

    def __init__(self, chain: FakeChain):
        self.chain = chain
        self.streaming = True
        self.alive = True
        self.w3 = object()
        self.subscriptions: Dict[str, Any] = {}
        self.reconnects = 0
        self.inbox: asyncio.Queue = asyncio.Queue()
        self._next_id = 0

    async def connect(self, streaming: bool = True):
        self.chain.journal.append("connect")
        return self.w3

    async def disconnect(self):
        self.chain.journal.append("disconnect")

    async def reconnect(self):
        self.reconnects += 1
        self.chain.journal.append("reconnect")
        # Remote subscriptions die with the socket
        self.subscriptions.clear()
        self.alive = True
        self.streaming = True
        return self.w3

    async def is_alive(self):
        return self.alive and self.streaming

    def contract(self, address, abi):
        key = address.lower()
        if key == MULTICALL:
            self.chain.journal.append(("contract", "multicall"))
            return FakeMulticall(self.chain)
        if key == FACTORY:
            self.chain.journal.append(("contract", "factory"))
        return FakeContract(self.chain, key)

    async def get_block_timestamp(self, block_number):
        if self.chain.broken:
            raise ConnectionError("feed down")
        return BLOCK_TIME

    async def subscribe_logs(self, address, topic):
        self._next_id += 1
        subscription_id = f"0xsub{self._next_id}"
        self.subscriptions[subscription_id] = (address.lower(), topic)
        self.chain.journal.append(("subscribe", address.lower()))
        return subscription_id

    async def unsubscribe(self, subscription_id):
        self.chain.journal.append(("unsubscribe", subscription_id))
        return self.subscriptions.pop(subscription_id, None) is not None

    async def messages(self):
        while True:
            yield await self.inbox.get()


class FakeStore:
    """In-memory markets/trades tables with the same conflict rules as PostgreSQL."""

    def __init__(self):
        self.markets: Dict[str, MarketRecord] = {}
        self.trades: Dict[str, Any] = {}
        self.connected = False
        self.fail_inserts = False

    async def connect(self):
        self.connected = True

    async def close(self):
        self.connected = False

    async def upsert_market(self, market):
        existing = self.markets.get(market.address)
        if existing is None:
            self.markets[market.address] = market.model_copy()
            return
        merged = existing.model_dump()
        for field, value in market.model_dump().items():
            if field == "resolved":
                merged["resolved"] = existing.resolved or market.resolved
            elif value is not None:
                merged[field] = value
        self.markets[market.address] = MarketRecord(**merged)

    async def get_market(self, address):
        return self.markets.get(address.lower())

    async def insert_trade(self, trade):
        if self.fail_inserts:
            raise ConnectionError("pool exhausted")
        if trade.market_address not in self.markets:
            raise ValueError("insert violates foreign key on market_address")
        if trade.tx_hash in self.trades:
            return False
        self.trades[trade.tx_hash] = trade.model_copy()
        return True

    async def resolve_trades(self, market_address, outcome):
        updated = 0
        for key, trade in list(self.trades.items()):
            if trade.market_address == market_address.lower() and trade.resolved_outcome is None:
                self.trades[key] = trade.model_copy(update={"resolved_outcome": outcome})
                updated += 1
        return updated

    async def get_stale_market_addresses(self, cutoff):
        return [
            address for address, market in self.markets.items()
            if market.resolved or (market.resolution_date is not None and market.resolution_date < cutoff)
        ]

    async def get_markets_with_unresolved_trades(self):
        return sorted({t.market_address for t in self.trades.values() if t.resolved_outcome is None})

    def trades_for(self, market_address):
        return [t for t in self.trades.values() if t.market_address == market_address.lower()]


@pytest.fixture
def test_settings():
    return Settings(
        FACTORY_ADDRESS=FACTORY,
        MULTICALL3_ADDRESS=MULTICALL,
        TOKEN_DECIMALS=18,
        MULTICALL_MAX_MARKETS=200,
        CONNECT_MAX_ATTEMPTS=2,
        CONNECT_BACKOFF_SECONDS=0,
        HEALTH_CHECK_INTERVAL_SECONDS=300,
        STALE_MARKET_DAYS=30,
        AUTO_APPLY_SCHEMA=False,
    )


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def make_indexer(test_settings, chain):
    """Build a PredictionMarketIndexer wired to the in-memory fakes."""

    def build():
        return PredictionMarketIndexer(
            test_settings, store=FakeStore(), connection=FakeConnection(chain)
        )

    return build
