# core/tasks/metadata_indexer.py
import asyncio
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from loguru import logger
from web3 import AsyncWeb3
from web3.exceptions import ABIFunctionNotFound, BadFunctionCallOutput, ContractLogicError

from core.tasks.abis import MULTICALL3_ABI
from core.tasks.errors import FeedUnavailableError
from core.tasks.records import MarketRecord, normalize_outcome

# (record field, contract view) in the fixed order used for batch offsets
MARKET_FIELDS: Tuple[Tuple[str, str], ...] = (
    ("prediction_id", "predictionId"),
    ("question", "question"),
    ("description", "description"),
    ("category", "category"),
    ("rule", "rule"),
    ("status", "status"),
    ("resolution_date", "resolutionDate"),
    ("resolved", "resolved"),
    ("winning_outcome", "outcome"),
    ("yes_pool", "yesPool"),
    ("no_pool", "noPool"),
    ("volume", "volume"),
    ("trade_count", "tradeCount"),
    ("creator_fid", "creatorFid"),
    ("total_shares", "totalShares"),
)

FIELD_COUNT = len(MARKET_FIELDS)

# A view that reverts or returns nothing (e.g. absent on older market versions)
FIELD_READ_ERRORS = (ContractLogicError, BadFunctionCallOutput, ABIFunctionNotFound, DecodingError, ValueError)


class MarketMetadataIndexer:
    """
    Reads market contract state and upserts it into the markets table.

    ``refresh_market`` issues one call per field; ``backfill_markets`` packs all
    fields of all markets into Multicall3 ``aggregate3`` calls. Both go through
    ``build_market_record`` so they store identical values.
    """

    def __init__(self, settings, connection, store, factory_abi, market_abi):
        self.connection = connection
        self.store = store
        self.factory_abi = factory_abi
        self.market_abi = market_abi
        self.factory_address = settings.FACTORY_ADDRESS
        self.multicall_address = settings.MULTICALL3_ADDRESS
        self.token_decimals = settings.TOKEN_DECIMALS
        self.max_markets_per_call = max(1, settings.MULTICALL_MAX_MARKETS)

        self.factory = None
        self.multicall = None
        self._market_contracts: Dict[str, Any] = {}
        # Views the configured ABI actually has; older market versions lack some
        self._output_types = {
            entry["name"]: [output["type"] for output in entry.get("outputs", [])]
            for entry in market_abi
            if entry.get("type") == "function"
        }
        missing = [view for _, view in MARKET_FIELDS if view not in self._output_types]
        if missing:
            logger.warning(f"Market ABI has no {', '.join(missing)}; those fields will read as null")

    def bind(self) -> None:
        """(Re)build contract handles on the connection's current web3 instance."""
        self.factory = self.connection.contract(self.factory_address, self.factory_abi)
        self.multicall = self.connection.contract(self.multicall_address, MULTICALL3_ABI)
        self._market_contracts.clear()

    def market_contract(self, address: str):
        key = address.lower()
        contract = self._market_contracts.get(key)
        if contract is None:
            contract = self.connection.contract(address, self.market_abi)
            self._market_contracts[key] = contract
        return contract

    def forget_market(self, address: str) -> None:
        """Drop the cached handle for a market we no longer listen to."""
        self._market_contracts.pop(address.lower(), None)

    def _scale(self, value: Optional[int]) -> Optional[Decimal]:
        if value is None:
            return None
        return Decimal(int(value)).scaleb(-self.token_decimals)

    def build_market_record(self, address: str, values: Dict[str, Any]) -> MarketRecord:
        """Convert raw contract values (None = unreadable) into a MarketRecord."""
        resolved = bool(values.get("resolved")) if values.get("resolved") is not None else False
        resolution_ts = values.get("resolution_date")
        creator_fid = values.get("creator_fid")
        prediction_id = values.get("prediction_id")
        status = values.get("status")
        trade_count = values.get("trade_count")
        total_shares = values.get("total_shares")

        return MarketRecord(
            address=address,
            prediction_id=str(prediction_id) if prediction_id is not None else None,
            question=values.get("question"),
            description=values.get("description"),
            category=values.get("category"),
            rule=values.get("rule"),
            status=int(status) if status is not None else None,
            resolution_date=datetime.fromtimestamp(int(resolution_ts), tz=timezone.utc) if resolution_ts else None,
            resolved=resolved,
            # outcome() reads as 0 before resolution; only meaningful once resolved
            winning_outcome=normalize_outcome(values.get("winning_outcome")) if resolved else None,
            yes_pool=self._scale(values.get("yes_pool")),
            no_pool=self._scale(values.get("no_pool")),
            volume=self._scale(values.get("volume")),
            trade_count=int(trade_count) if trade_count is not None else None,
            creator_fid=str(creator_fid) if creator_fid else None,
            total_shares=int(total_shares) if total_shares is not None else None,
        )

    async def read_view(self, address: str, view: str, *args) -> Any:
        """Call one view function; an unreadable field is returned as None."""
        if view not in self._output_types:
            return None
        contract = self.market_contract(address)
        try:
            return await getattr(contract.functions, view)(*args).call()
        except FIELD_READ_ERRORS as e:
            logger.debug(f"{view}() unreadable on {address[:10]}...: {e}")
            return None

    async def read_market_fields(self, address: str) -> Dict[str, Any]:
        results = await asyncio.gather(*(self.read_view(address, view) for _, view in MARKET_FIELDS))
        return {field: value for (field, _), value in zip(MARKET_FIELDS, results)}

    async def _store(self, address: str, values: Dict[str, Any]) -> Optional[MarketRecord]:
        if all(value is None for value in values.values()):
            logger.warning(f"No readable fields on {address}; not a market contract?")
            return None
        record = self.build_market_record(address, values)
        await self.store.upsert_market(record)
        return record

    async def refresh_market(self, address: str) -> Optional[MarketRecord]:
        """Single-market path, used after an event on that market."""
        values = await self.read_market_fields(address)
        if all(value is None for value in values.values()):
            # Every view failing at once points at the feed, not the contract
            raise FeedUnavailableError(f"no fields readable for market {address}")
        return await self._store(address, values)

    async def aggregate(self, calls: Sequence[Tuple[str, bytes]]) -> List[Tuple[bool, bytes]]:
        """One ``aggregate3`` round trip with ``allowFailure`` set on every call."""
        if not calls:
            return []
        payload = [(AsyncWeb3.to_checksum_address(target), True, data) for target, data in calls]
        return await self.multicall.functions.aggregate3(payload).call()

    def _decode_view(self, view: str, success: bool, data: bytes) -> Any:
        if not success or not data:
            return None
        try:
            return abi_decode(self._output_types[view], data)[0]
        except (DecodingError, ValueError) as e:
            logger.debug(f"Could not decode {view}() result: {e}")
            return None

    async def backfill_markets(self, addresses: Sequence[str]) -> List[MarketRecord]:
        """Batch path: all fields for all markets in as few multicall round trips as allowed."""
        records = []
        for start in range(0, len(addresses), self.max_markets_per_call):
            chunk = list(addresses[start:start + self.max_markets_per_call])
            # None marks a view the ABI lacks; it keeps its slot but is not sent
            slots = []
            for address in chunk:
                contract = self.connection.contract(address, self.market_abi)
                for _, view in MARKET_FIELDS:
                    if view in self._output_types:
                        slots.append((address, contract.encode_abi(view, args=[])))
                    else:
                        slots.append(None)

            answers = iter(await self.aggregate([slot for slot in slots if slot is not None]))
            results = [next(answers) if slot is not None else (False, b"") for slot in slots]

            for market_index, address in enumerate(chunk):
                values = {}
                for field_index, (field, view) in enumerate(MARKET_FIELDS):
                    success, data = results[market_index * FIELD_COUNT + field_index]
                    values[field] = self._decode_view(view, success, data)
                record = await self._store(address, values)
                if record is not None:
                    records.append(record)

        logger.info(f"Backfilled metadata for {len(records)}/{len(addresses)} markets")
        return records

    async def list_factory_markets(self) -> List[str]:
        """Every market address the factory knows about, in creation order."""
        count = await self.factory.functions.marketCount().call()
        calls = [
            (self.factory_address, self.factory.encode_abi("markets", args=[index]))
            for index in range(int(count))
        ]
        markets = []
        for start in range(0, len(calls), self.max_markets_per_call * FIELD_COUNT):
            chunk = calls[start:start + self.max_markets_per_call * FIELD_COUNT]
            for offset, (success, data) in enumerate(await self.aggregate(chunk)):
                if not success:
                    logger.warning(f"Factory markets({start + offset}) unreadable")
                    continue
                markets.append(abi_decode(["address"], data)[0].lower())
        logger.info(f"Factory lists {len(markets)} markets")
        return markets
