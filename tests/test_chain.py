"""Tests for the JSON-RPC chain client."""

import json

import httpx
import pytest
from eth_account import Account

from custodian.chain import GasEstimate, JsonRpcChainClient, validate_address
from custodian.errors import ChainError, ValidationError

RPC_URL = "http://rpc.test"


def _client(results: dict, seen: list | None = None) -> JsonRpcChainClient:
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if seen is not None:
            seen.append(body)
        result = results[body["method"]]
        if isinstance(result, httpx.Response):
            return result
        if isinstance(result, Exception):
            raise result
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], **result})

    http = httpx.Client(transport=httpx.MockTransport(handler))
    return JsonRpcChainClient(RPC_URL, http=http)


def test_gas_price():
    client = _client({"eth_gasPrice": {"result": hex(5 * 10**9)}})
    price = client.get_gas_price()
    assert price.wei == 5 * 10**9
    assert str(price.gwei) == "5"


def test_balance_uses_checksum_address():
    seen = []
    address = Account.create().address
    client = _client({"eth_getBalance": {"result": hex(10**18)}}, seen)
    balance = client.get_balance(address.lower())
    assert balance.address == address
    assert balance.balance_bnb == 1
    assert seen[0]["params"] == [address, "latest"]


def test_balance_rejects_bad_address():
    client = _client({})
    with pytest.raises(ValidationError):
        client.get_balance("0x123")


def test_estimate_gas():
    seen = []
    client = _client(
        {"eth_estimateGas": {"result": hex(21_000)}, "eth_gasPrice": {"result": hex(10**9)}},
        seen,
    )
    recipient = Account.create().address
    estimate = client.estimate_gas({"to": recipient.lower(), "value": 10**17})
    assert estimate == GasEstimate(gas_limit=21_000, gas_price_wei=10**9)
    assert estimate.estimated_cost_wei == 21_000 * 10**9
    assert seen[0]["params"][0] == {"to": recipient, "value": hex(10**17)}


def test_rpc_error_is_chain_error():
    client = _client({"eth_gasPrice": {"error": {"code": -32000, "message": "node is syncing"}}})
    with pytest.raises(ChainError, match="node is syncing"):
        client.get_gas_price()


def test_http_error_is_chain_error():
    client = _client({"eth_gasPrice": httpx.Response(503)})
    with pytest.raises(ChainError):
        client.get_gas_price()


def test_timeout_is_chain_error():
    client = _client({"eth_gasPrice": httpx.ReadTimeout("slow")})
    with pytest.raises(ChainError, match="timeout"):
        client.get_gas_price()


def test_malformed_quantity():
    client = _client({"eth_gasPrice": {"result": "lots"}})
    with pytest.raises(ChainError):
        client.get_gas_price()


@pytest.mark.parametrize("address,valid", [
    ("0x" + "ab" * 20, True),
    ("0x123", False),
    ("", False),
    (None, False),
])
def test_validate_address(address, valid):
    assert validate_address(address) is valid
