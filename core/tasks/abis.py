# core/tasks/abis.py
import json
from typing import Any, Dict, List, Optional


def _view(name: str, output_type: str, inputs: Optional[List[Dict[str, str]]] = None) -> Dict[str, Any]:
    return {
        "inputs": inputs or [],
        "name": name,
        "outputs": [{"name": "", "type": output_type}],
        "stateMutability": "view",
        "type": "function",
    }


FACTORY_ABI = [
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "market", "type": "address"},
            {"indexed": True, "name": "creator", "type": "address"},
            {"indexed": False, "name": "predictionId", "type": "uint256"}
        ],
        "name": "MarketCreated",
        "type": "event"
    },
    _view("marketCount", "uint256"),
    _view("markets", "address", [{"name": "", "type": "uint256"}]),
]

MARKET_ABI = [
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "user", "type": "address"},
            {"indexed": False, "name": "outcome", "type": "uint8"},
            {"indexed": False, "name": "amount", "type": "uint256"},
            {"indexed": False, "name": "shares", "type": "uint256"},
            {"indexed": False, "name": "creatorFee", "type": "uint256"},
            {"indexed": False, "name": "platformFee", "type": "uint256"}
        ],
        "name": "Trade",
        "type": "event"
    },
    {
        "anonymous": False,
        "inputs": [],
        "name": "MarketResolved",
        "type": "event"
    },
    _view("predictionId", "uint256"),
    _view("question", "string"),
    _view("description", "string"),
    _view("category", "string"),
    _view("rule", "string"),
    _view("status", "uint8"),
    _view("resolutionDate", "uint256"),
    _view("resolved", "bool"),
    _view("outcome", "uint8"),
    _view("yesPool", "uint256"),
    _view("noPool", "uint256"),
    _view("volume", "uint256"),
    _view("tradeCount", "uint256"),
    _view("creatorFid", "uint256"),
    _view("totalShares", "uint256"),
    _view("userFid", "uint256", [{"name": "user", "type": "address"}]),
]

MULTICALL3_ABI = [
    {
        "inputs": [
            {
                "components": [
                    {"name": "target", "type": "address"},
                    {"name": "allowFailure", "type": "bool"},
                    {"name": "callData", "type": "bytes"}
                ],
                "name": "calls",
                "type": "tuple[]"
            }
        ],
        "name": "aggregate3",
        "outputs": [
            {
                "components": [
                    {"name": "success", "type": "bool"},
                    {"name": "returnData", "type": "bytes"}
                ],
                "name": "returnData",
                "type": "tuple[]"
            }
        ],
        "stateMutability": "payable",
        "type": "function"
    }
]

TRADE_EVENT = "Trade"
RESOLUTION_EVENT = "MarketResolved"
MARKET_CREATED_EVENT = "MarketCreated"


def load_abi(override: Optional[str], default: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Use the JSON ABI from configuration when provided, else the built-in one."""
    if not override:
        return default
    return json.loads(override)


def find_abi_entry(abi: List[Dict[str, Any]], name: str, entry_type: str = "function") -> Dict[str, Any]:
    for entry in abi:
        if entry.get("type") == entry_type and entry.get("name") == name:
            return entry
    raise KeyError(f"{entry_type} '{name}' not found in ABI")
