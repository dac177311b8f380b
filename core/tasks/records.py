# core/tasks/records.py
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, field_validator


def normalize_outcome(value) -> Optional[int]:
    """Canonical winning outcome: None, 0 or 1. Boolean contract fields map to 0/1."""
    if value is None:
        return None
    if isinstance(value, bool):
        return 1 if value else 0
    return int(value)


class MarketRecord(BaseModel):
    """One row of the markets table."""

    address: str
    prediction_id: Optional[str] = None
    question: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    rule: Optional[str] = None
    status: Optional[int] = None
    resolution_date: Optional[datetime] = None
    resolved: bool = False
    winning_outcome: Optional[int] = None
    yes_pool: Optional[Decimal] = None
    no_pool: Optional[Decimal] = None
    volume: Optional[Decimal] = None
    trade_count: Optional[int] = None
    creator_fid: Optional[str] = None
    total_shares: Optional[int] = None

    @field_validator("address")
    @classmethod
    def _lower_address(cls, value: str) -> str:
        return value.lower()

    @field_validator("winning_outcome", mode="before")
    @classmethod
    def _canonical_outcome(cls, value):
        return normalize_outcome(value)


class TradeRecord(BaseModel):
    """One row of the trades table."""

    tx_hash: str
    block_number: int
    user_address: str
    market_address: str
    outcome: int
    amount: int
    shares: int
    creator_fee: int
    platform_fee: int
    timestamp: datetime
    fid: Optional[str] = None
    prediction_id: Optional[str] = None
    resolved_outcome: Optional[int] = None
    user_outcome: int

    @field_validator("user_address", "market_address", "tx_hash")
    @classmethod
    def _lower_hex(cls, value: str) -> str:
        return value.lower()

    @field_validator("resolved_outcome", mode="before")
    @classmethod
    def _canonical_outcome(cls, value):
        return normalize_outcome(value)


class TradeNotification(BaseModel):
    """Decoded Trade event emitted by a market contract."""

    market_address: str
    tx_hash: str
    block_number: int
    user: str
    outcome: int
    amount: int
    shares: int
    creator_fee: int
    platform_fee: int

    @field_validator("market_address", "tx_hash", "user")
    @classmethod
    def _lower_hex(cls, value: str) -> str:
        return value.lower()
