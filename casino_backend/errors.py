# casino_backend/errors.py
from __future__ import annotations

from typing import Optional


class CasinoBackendError(Exception):
    """Base class for everything the entropy backend raises on purpose."""


class ConfigError(CasinoBackendError, ValueError):
    pass


class NetworkError(CasinoBackendError):
    """RPC transport failure or deadline hit on a chain call."""


class ContractCallError(CasinoBackendError):
    def __init__(self, address: str, fn_name: str, reason: str):
        super().__init__(f"{fn_name}() on {address}: {reason}")
        self.address = address
        self.fn_name = fn_name
        self.reason = reason


class NoContractCode(ContractCallError):
    def __init__(self, address: str, fn_name: str):
        super().__init__(address, fn_name, "no contract code at address")


class ContractReverted(ContractCallError):
    pass


class ConfirmationTimeout(CasinoBackendError):
    def __init__(self, tx_hash: str, timeout: float):
        super().__init__(f"tx {tx_hash} not mined after {timeout:.0f}s")
        self.tx_hash = tx_hash
        self.timeout = timeout


class TransactionRejected(CasinoBackendError):
    """The node refused the signed transaction. The message keeps the provider text."""


class TransactionReverted(CasinoBackendError):
    def __init__(self, tx_hash: str):
        super().__init__(f"tx {tx_hash} reverted")
        self.tx_hash = tx_hash


class NonceExhaustedError(CasinoBackendError):
    """
    Every nonce retry failed. Fatal for the operation: callers must not
    retry it further up the stack.
    """

    def __init__(self, attempts: int, last_error: Optional[Exception] = None):
        super().__init__(f"nonce retries exhausted after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class InsufficientTreasuryBalance(CasinoBackendError):
    def __init__(self, address: str, required: int, available: int):
        super().__init__(
            f"treasury {address} has {available} wei, needs {required} wei"
        )
        self.address = address
        self.required = required
        self.available = available
