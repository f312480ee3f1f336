"""
Blockchain collaborator: gas price, balances, address checks, gas estimates.

Only reads are performed here; broadcasting signed payloads is the
caller's job. ``JsonRpcChainClient`` talks plain Ethereum JSON-RPC over
httpx, which BNB Smart Chain nodes speak as well.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Mapping, Optional, Protocol

import httpx
from eth_utils import from_wei, is_address, to_checksum_address

from .errors import ChainError, ValidationError
from .money import wei_to_native

logger = logging.getLogger(__name__)


DEFAULT_RPC_URL = "https://data-seed-prebsc-1-s1.bnbchain.org:8545"
DEFAULT_CHAIN_ID = 97  # BNB Smart Chain testnet
DEFAULT_GAS_LIMIT = 21_000


@dataclass(frozen=True)
class GasPrice:
    wei: int

    @property
    def gwei(self) -> Decimal:
        return Decimal(from_wei(self.wei, "gwei"))

    def to_dict(self) -> dict:
        return {"wei": str(self.wei), "gwei": str(self.gwei)}


@dataclass(frozen=True)
class Balance:
    address: str
    balance_wei: int

    @property
    def balance_bnb(self) -> Decimal:
        return wei_to_native(self.balance_wei)

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "balance_wei": str(self.balance_wei),
            "balance_bnb": str(self.balance_bnb),
        }


@dataclass(frozen=True)
class GasEstimate:
    gas_limit: int
    gas_price_wei: int

    @property
    def gas_price_gwei(self) -> Decimal:
        return Decimal(from_wei(self.gas_price_wei, "gwei"))

    @property
    def estimated_cost_wei(self) -> int:
        return self.gas_limit * self.gas_price_wei

    def to_dict(self) -> dict:
        return {
            "gas_limit": self.gas_limit,
            "gas_price_gwei": str(self.gas_price_gwei),
            "estimated_cost_wei": str(self.estimated_cost_wei),
            "estimated_cost_bnb": str(wei_to_native(self.estimated_cost_wei)),
        }


class ChainClient(Protocol):
    def get_gas_price(self) -> GasPrice: ...
    def get_balance(self, address: str) -> Balance: ...
    def validate_address(self, address: str) -> bool: ...
    def estimate_gas(self, tx: Mapping[str, Any]) -> GasEstimate: ...


def validate_address(address: Optional[str]) -> bool:
    return bool(address) and is_address(address)


class JsonRpcChainClient:
    """Minimal synchronous JSON-RPC client for EVM chains."""

    def __init__(
        self,
        rpc_url: str = DEFAULT_RPC_URL,
        chain_id: int = DEFAULT_CHAIN_ID,
        timeout_seconds: float = 15.0,
        http: Optional[httpx.Client] = None,
    ):
        self.rpc_url = rpc_url
        self.chain_id = chain_id
        self._http = http or httpx.Client(timeout=timeout_seconds)
        self._ids = itertools.count(1)

    def close(self) -> None:
        self._http.close()

    def _rpc(self, method: str, params: list[Any]) -> Any:
        body = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            response = self._http.post(self.rpc_url, json=body)
            response.raise_for_status()
            payload = response.json()
        except httpx.TimeoutException as e:
            raise ChainError(f"RPC timeout calling {method}: {e}") from e
        except httpx.HTTPError as e:
            raise ChainError(f"RPC transport error calling {method}: {e}") from e
        except ValueError as e:
            raise ChainError(f"RPC returned invalid JSON for {method}") from e

        if payload.get("error"):
            err = payload["error"]
            message = err.get("message", err) if isinstance(err, dict) else err
            raise ChainError(f"RPC error from {method}: {message}")
        if "result" not in payload:
            raise ChainError(f"RPC response for {method} has no result")
        return payload["result"]

    @staticmethod
    def _quantity(value: Any, method: str) -> int:
        try:
            return int(str(value), 16)
        except (TypeError, ValueError) as e:
            raise ChainError(f"Malformed quantity from {method}: {value!r}") from e

    def get_gas_price(self) -> GasPrice:
        return GasPrice(wei=self._quantity(self._rpc("eth_gasPrice", []), "eth_gasPrice"))

    def get_balance(self, address: str) -> Balance:
        if not self.validate_address(address):
            raise ValidationError(f"Invalid address: {address}")
        checksum = to_checksum_address(address)
        result = self._rpc("eth_getBalance", [checksum, "latest"])
        return Balance(address=checksum, balance_wei=self._quantity(result, "eth_getBalance"))

    def validate_address(self, address: str) -> bool:
        return validate_address(address)

    def estimate_gas(self, tx: Mapping[str, Any]) -> GasEstimate:
        call: dict[str, Any] = {}
        if tx.get("from"):
            call["from"] = to_checksum_address(tx["from"])
        if tx.get("to"):
            call["to"] = to_checksum_address(tx["to"])
        if tx.get("value") is not None:
            call["value"] = hex(int(tx["value"]))
        if tx.get("data"):
            call["data"] = tx["data"]

        gas_limit = self._quantity(self._rpc("eth_estimateGas", [call]), "eth_estimateGas")
        price = self.get_gas_price()
        logger.debug("Gas estimate: %d units at %s gwei", gas_limit, price.gwei)
        return GasEstimate(gas_limit=gas_limit, gas_price_wei=price.wei)
