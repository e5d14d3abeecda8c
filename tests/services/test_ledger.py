"""Tests for the ledger gateway client."""

import base64
import json

import httpx
import pytest
from nacl.signing import SigningKey

from vine_award.core.errors import LedgerError, TransientIOError
from vine_award.services.ledger import HttpLedgerClient, LedgerConfig, LedgerOperation
from vine_award.services.signers import Signer

CONFIG = LedgerConfig(base_url="http://ledger.test", timeout_seconds=5.0)


def make_client(handler) -> HttpLedgerClient:
    return HttpLedgerClient(CONFIG, transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_read_operations_parse_gateway_payloads() -> None:
    routes = {
        "/ledgers/dao-1/epoch": {"epoch": 12},
        "/accounts/payer/balance": {"balance": 99},
        "/handles/latest": {"handle": "h-1"},
    }
    client = make_client(lambda request: httpx.Response(200, json=routes[request.url.path]))
    try:
        assert await client.resolve_current_epoch("dao-1") == 12
        assert await client.get_balance("payer") == 99
        assert await client.latest_handle() == "h-1"
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_build_and_estimate_round_trip_payload() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if request.url.path == "/ledgers/dao-1/operations":
            assert body["participant"] == "wallet" and body["epoch"] == 3
            return httpx.Response(200, json={"operation": base64.b64encode(b"op").decode()})
        assert base64.b64decode(body["operation"]) == b"op"
        return httpx.Response(200, json={"fee": 5000})

    client = make_client(handler)
    try:
        operation = await client.build_operation("dao-1", "wallet", 1, "auth", "payer", epoch=3)
        assert operation.payload == b"op"
        assert await client.estimate_fee(operation) == 5000
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_submit_signs_payload_and_handle() -> None:
    key = SigningKey.generate()
    captured: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured.update(json.loads(request.content))
        return httpx.Response(200, json={"reference": "sig-1"})

    operation = LedgerOperation("dao-1", "wallet", b"op").with_handle("h-1")
    client = make_client(handler)
    try:
        reference = await client.submit(operation, [Signer(key)], timeout=1.0)
    finally:
        await client.close()

    assert reference == "sig-1"
    assert captured["handle"] == "h-1"
    signature = base64.b64decode(captured["signatures"][0]["signature"])
    key.verify_key.verify(b"op" + b"h-1", signature)


@pytest.mark.asyncio
async def test_submit_requires_signers() -> None:
    client = make_client(lambda request: httpx.Response(200, json={}))
    with pytest.raises(LedgerError):
        await client.submit(LedgerOperation("dao-1", "wallet", b"op"), [], timeout=1.0)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("status_code", "error"), [(429, TransientIOError), (502, TransientIOError), (400, LedgerError)]
)
async def test_error_statuses_are_mapped(status_code: int, error: type[Exception]) -> None:
    client = make_client(lambda request: httpx.Response(status_code, json={"error": "nope"}))
    try:
        with pytest.raises(error):
            await client.get_balance("payer")
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_undecodable_response_is_a_ledger_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.DecodingError("bad gzip", request=request)

    client = make_client(handler)
    try:
        with pytest.raises(LedgerError):
            await client.latest_handle()
    finally:
        await client.close()
