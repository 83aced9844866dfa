# casino_backend/chain/abis.py
from __future__ import annotations

from typing import Any, Dict, List

from web3 import Web3

# Casino entropy consumer on the oracle chain (wraps Pyth Entropy)
ENTROPY_CONSUMER_ABI: List[Dict[str, Any]] = [
    {"name": "entropyFee", "type": "function", "stateMutability": "view",
     "inputs": [], "outputs": [{"name": "", "type": "uint256"}]},
    {"name": "request", "type": "function", "stateMutability": "payable",
     "inputs": [{"name": "userRandomNumber", "type": "bytes32"}],
     "outputs": [{"name": "", "type": "uint64"}]},
    {"name": "isRequestFulfilled", "type": "function", "stateMutability": "view",
     "inputs": [{"name": "requestId", "type": "bytes32"}],
     "outputs": [{"name": "", "type": "bool"}]},
    {"name": "getRandomValue", "type": "function", "stateMutability": "view",
     "inputs": [{"name": "requestId", "type": "bytes32"}],
     "outputs": [{"name": "", "type": "bytes32"}]},
    {"anonymous": False, "type": "event", "name": "EntropyRequested",
     "inputs": [
         {"indexed": True, "name": "requestId", "type": "bytes32"},
         {"indexed": False, "name": "gameType", "type": "uint8"},
         {"indexed": False, "name": "gameSubType", "type": "string"},
         {"indexed": False, "name": "requester", "type": "address"},
     ]},
    {"anonymous": False, "type": "event", "name": "EntropyFulfilled",
     "inputs": [
         {"indexed": True, "name": "requestId", "type": "bytes32"},
         {"indexed": False, "name": "randomValue", "type": "bytes32"},
     ]},
]

# Casino contract on the game chain
CASINO_ABI: List[Dict[str, Any]] = [
    {"name": "completeGameSession", "type": "function", "stateMutability": "nonpayable",
     "inputs": [
         {"name": "sessionId", "type": "bytes32"},
         {"name": "won", "type": "bool"},
         {"name": "winAmount", "type": "uint256"},
         {"name": "requestId", "type": "bytes32"},
     ],
     "outputs": []},
    {"anonymous": False, "type": "event", "name": "GamePlayed",
     "inputs": [
         {"indexed": True, "name": "user", "type": "address"},
         {"indexed": False, "name": "gameType", "type": "uint8"},
         {"indexed": False, "name": "betAmount", "type": "uint256"},
         {"indexed": False, "name": "timestamp", "type": "uint256"},
     ]},
]


def event_abi(abi: List[Dict[str, Any]], name: str) -> Dict[str, Any]:
    for item in abi:
        if item.get("type") == "event" and item.get("name") == name:
            return item
    raise KeyError(f"event {name} not in ABI")


def event_signature(abi_item: Dict[str, Any]) -> str:
    types = ",".join(i["type"] for i in abi_item["inputs"])
    return f"{abi_item['name']}({types})"


def event_topic(abi_item: Dict[str, Any]) -> str:
    """topic0 as 0x-hex, e.g. keccak('EntropyFulfilled(bytes32,bytes32)')"""
    return Web3.to_hex(Web3.keccak(text=event_signature(abi_item)))


ENTROPY_REQUESTED = event_abi(ENTROPY_CONSUMER_ABI, "EntropyRequested")
ENTROPY_FULFILLED = event_abi(ENTROPY_CONSUMER_ABI, "EntropyFulfilled")
GAME_PLAYED = event_abi(CASINO_ABI, "GamePlayed")
