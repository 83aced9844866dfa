# casino_backend/chain/connector.py
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from aiohttp import ClientError
from eth_account import Account
from eth_account.signers.local import LocalAccount
from hexbytes import HexBytes
from web3 import AsyncWeb3, Web3
from web3._utils.events import get_event_data
from web3.exceptions import (
    BadFunctionCallOutput,
    ContractLogicError,
    TimeExhausted,
    Web3RPCError,
)

from ..config import ChainSettings, Settings
from ..errors import (
    ConfirmationTimeout,
    ContractReverted,
    NetworkError,
    NoContractCode,
    TransactionRejected,
)

logger = logging.getLogger(__name__)

NONCE_TAGS = ("latest", "pending")


@dataclass(frozen=True)
class TreasuryIdentity:
    """Address + signing key for one chain. Loaded once, never mutated."""

    address: str
    account: LocalAccount = field(repr=False, compare=False)

    @classmethod
    def from_private_key(cls, private_key: str) -> "TreasuryIdentity":
        account = Account.from_key(private_key)
        return cls(address=account.address, account=account)


@dataclass(frozen=True)
class Receipt:
    tx_hash: str
    block_number: int
    gas_used: int
    status: int
    logs: List[Any] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == 1

    @classmethod
    def from_web3(cls, receipt) -> "Receipt":
        return cls(
            tx_hash=Web3.to_hex(receipt["transactionHash"]),
            block_number=int(receipt["blockNumber"]),
            gas_used=int(receipt["gasUsed"]),
            status=int(receipt.get("status", 1)),
            logs=list(receipt.get("logs", [])),
        )


class ChainConnector:
    """
    Uniform read/write surface over one chain's JSON-RPC plus its treasury.

    Every RPC call runs under an explicit deadline so a hung node never
    parks a logical task forever.
    """

    def __init__(
        self,
        name: str,
        w3: AsyncWeb3,
        treasury: TreasuryIdentity,
        chain_id: int,
        *,
        rpc_timeout: float = 20.0,
        receipt_timeout: float = 120.0,
        poll_latency: float = 1.0,
        explorer_url: str = "",
    ):
        self.name = name
        self.w3 = w3
        self.treasury = treasury
        self.chain_id = chain_id
        self.rpc_timeout = rpc_timeout
        self.receipt_timeout = receipt_timeout
        self.poll_latency = poll_latency
        self.explorer_url = explorer_url.rstrip("/")

    @classmethod
    def from_settings(cls, chain: ChainSettings, settings: Settings) -> "ChainConnector":
        w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(chain.rpc_url))
        return cls(
            chain.name,
            w3,
            TreasuryIdentity.from_private_key(chain.private_key),
            chain.chain_id,
            rpc_timeout=settings.rpc_timeout,
            receipt_timeout=settings.receipt_timeout,
            explorer_url=chain.explorer_url,
        )

    def __repr__(self) -> str:
        return f"ChainConnector({self.name}, chain_id={self.chain_id}, treasury={self.treasury.address})"

    def tx_link(self, tx_hash: str) -> str:
        """Explorer URL for a tx, or the bare hash when no explorer is configured."""
        if not self.explorer_url:
            return tx_hash
        return f"{self.explorer_url}/tx/{tx_hash}"

    # ---------- plumbing ----------

    async def _rpc(self, what: str, awaitable):
        try:
            return await asyncio.wait_for(awaitable, timeout=self.rpc_timeout)
        except asyncio.TimeoutError:
            raise NetworkError(f"[{self.name}] {what} timed out after {self.rpc_timeout:.0f}s") from None
        except (ClientError, OSError) as e:
            raise NetworkError(f"[{self.name}] {what} failed: {e}") from e

    async def _read(self, what: str, awaitable):
        try:
            return await self._rpc(what, awaitable)
        except ContractLogicError:
            raise
        except Web3RPCError as e:
            raise NetworkError(f"[{self.name}] {what} rejected by node: {e}") from e

    # ---------- reads ----------

    async def get_balance(self, address: Optional[str] = None) -> int:
        address = Web3.to_checksum_address(address or self.treasury.address)
        return int(await self._read("get_balance", self.w3.eth.get_balance(address)))

    async def get_transaction_count(self, address: str, tag: str = "latest") -> int:
        if tag not in NONCE_TAGS:
            raise ValueError(f"tag must be one of {NONCE_TAGS}, got {tag!r}")
        address = Web3.to_checksum_address(address)
        return int(await self._read(f"get_transaction_count({tag})",
                                    self.w3.eth.get_transaction_count(address, tag)))

    async def get_block_number(self) -> int:
        return int(await self._read("block_number", self.w3.eth.block_number))

    async def get_code(self, address: str) -> bytes:
        address = Web3.to_checksum_address(address)
        return bytes(await self._read("get_code", self.w3.eth.get_code(address)))

    async def get_logs(self, address: str, topic: str, from_block: int, to_block: int) -> List[Any]:
        params = {
            "address": Web3.to_checksum_address(address),
            "topics": [topic],
            "fromBlock": from_block,
            "toBlock": to_block,
        }
        return list(await self._read("get_logs", self.w3.eth.get_logs(params)))

    def contract(self, address: str, abi: List[Dict[str, Any]]):
        return self.w3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)

    async def call_contract(self, address: str, abi: List[Dict[str, Any]], fn_name: str, *args):
        """
        Read-only call. Raises NoContractCode when nothing is deployed at
        `address` and ContractReverted when the call reverts.
        """
        fn = self.contract(address, abi).functions[fn_name](*args)
        try:
            return await self._read(f"{fn_name}()", fn.call())
        except ContractLogicError as e:
            if not await self.get_code(address):
                raise NoContractCode(address, fn_name) from e
            raise ContractReverted(address, fn_name, str(e)) from e
        except BadFunctionCallOutput as e:
            # empty return data from an EOA surfaces as a decoding error
            if not await self.get_code(address):
                raise NoContractCode(address, fn_name) from e
            raise ContractReverted(address, fn_name, str(e)) from e

    def encode_call(self, address: str, abi: List[Dict[str, Any]], fn_name: str, *args) -> str:
        return self.contract(address, abi).encode_abi(fn_name, args=list(args))

    def decode_log(self, event_abi: Dict[str, Any], log) -> Any:
        return get_event_data(self.w3.codec, event_abi, log)

    # ---------- writes ----------

    async def submit_transaction(self, tx: Dict[str, Any]) -> str:
        """Sign with the treasury key and broadcast. Does not wait for mining."""
        tx = dict(tx)
        tx.setdefault("chainId", self.chain_id)
        signed = self.treasury.account.sign_transaction(tx)
        try:
            tx_hash = await self._rpc("send_raw_transaction",
                                      self.w3.eth.send_raw_transaction(signed.raw_transaction))
        except Web3RPCError as e:
            raise TransactionRejected(str(e)) from e
        except ValueError as e:
            raise TransactionRejected(str(e)) from e
        return Web3.to_hex(HexBytes(tx_hash))

    async def wait_for_receipt(self, tx_hash: str) -> Receipt:
        try:
            receipt = await asyncio.wait_for(
                self.w3.eth.wait_for_transaction_receipt(
                    tx_hash, timeout=self.receipt_timeout, poll_latency=self.poll_latency
                ),
                timeout=self.receipt_timeout + self.rpc_timeout,
            )
        except (TimeExhausted, asyncio.TimeoutError):
            raise ConfirmationTimeout(tx_hash, self.receipt_timeout) from None
        except (ClientError, OSError) as e:
            raise NetworkError(f"[{self.name}] waiting for {tx_hash} failed: {e}") from e
        return Receipt.from_web3(receipt)

    async def close(self) -> None:
        disconnect = getattr(self.w3.provider, "disconnect", None)
        if disconnect is not None:
            await disconnect()
