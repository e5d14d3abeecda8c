"""External ledger client.

The ledger program and its instruction encoding live behind a JSON gateway;
this module only knows the operations the award pipeline needs and signs the
opaque operation payload with the run's Ed25519 signers.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, replace
from typing import Any, Protocol

import httpx

from vine_award.core.errors import LedgerError, TransientIOError
from vine_award.core.settings import Settings
from vine_award.services.signers import Signer

logger = logging.getLogger(__name__)

HTTP_TOO_MANY_REQUESTS = 429
HTTP_INTERNAL_SERVER_ERROR = 500


@dataclass(frozen=True)
class LedgerOperation:
    """Opaque instruction produced by the ledger gateway.

    ``handle`` is the short-lived chain-state reference (a recent block hash)
    the operation must carry when it is submitted.
    """

    ledger_id: str
    participant: str
    payload: bytes
    handle: str | None = None

    def with_handle(self, handle: str) -> LedgerOperation:
        return replace(self, handle=handle)


class LedgerService(Protocol):
    """Operations the award executor issues against the external ledger."""

    async def resolve_current_epoch(self, ledger_id: str) -> int: ...

    async def build_operation(
        self,
        ledger_id: str,
        participant: str,
        amount: int,
        authority_id: str,
        payer_id: str,
        *,
        epoch: int | None = None,
    ) -> LedgerOperation: ...

    async def estimate_fee(self, operation: LedgerOperation) -> int: ...

    async def get_balance(self, account: str) -> int: ...

    async def latest_handle(self) -> str: ...

    async def submit(
        self, operation: LedgerOperation, signers: Sequence[Signer], timeout: float
    ) -> str: ...


@dataclass(frozen=True)
class LedgerConfig:
    """Immutable configuration for ledger gateway operations."""

    base_url: str
    timeout_seconds: float


def load_ledger_config(settings: Settings, endpoint: str | None = None) -> LedgerConfig:
    """Build ledger configuration, letting a per-domain endpoint win."""

    return LedgerConfig(
        base_url=endpoint or settings.ledger_base_url,
        timeout_seconds=float(settings.ledger_http_timeout_seconds),
    )


class HttpLedgerClient:
    """HTTP client wrapper for the ledger gateway."""

    def __init__(
        self,
        config: LedgerConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._client_lock = asyncio.Lock()

    async def _ensure_client(self) -> httpx.AsyncClient:
        async with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    base_url=self.config.base_url,
                    timeout=httpx.Timeout(self.config.timeout_seconds),
                    transport=self._transport,
                )
        return self._client

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_data: Any | None = None,
        timeout: float | None = None,
    ) -> Mapping[str, Any]:
        client = await self._ensure_client()
        kwargs: dict[str, Any] = {"json": json_data}
        if timeout is not None:
            kwargs["timeout"] = httpx.Timeout(timeout)
        try:
            response = await client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise TransientIOError(f"Ledger request timed out: {method} {path}") from exc
        except httpx.TransportError as exc:
            raise TransientIOError(f"Ledger request failed: {exc}") from exc
        except httpx.HTTPError as exc:
            raise LedgerError(f"Ledger request failed: {exc}") from exc

        if response.status_code == HTTP_TOO_MANY_REQUESTS:
            raise TransientIOError(f"Ledger rate limited on {method} {path}")
        if response.status_code >= HTTP_INTERNAL_SERVER_ERROR:
            raise TransientIOError(f"Ledger responded with {response.status_code}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise LedgerError(f"Ledger returned invalid JSON for {method} {path}") from exc
        if response.status_code >= 400:
            message = payload.get("error") if isinstance(payload, Mapping) else None
            raise LedgerError(message or f"Ledger responded with {response.status_code}")
        if not isinstance(payload, Mapping):
            raise LedgerError(f"Ledger returned an unexpected payload for {method} {path}")
        return payload

    async def resolve_current_epoch(self, ledger_id: str) -> int:
        payload = await self._request("GET", f"/ledgers/{ledger_id}/epoch")
        return int(payload["epoch"])

    async def build_operation(
        self,
        ledger_id: str,
        participant: str,
        amount: int,
        authority_id: str,
        payer_id: str,
        *,
        epoch: int | None = None,
    ) -> LedgerOperation:
        payload = await self._request(
            "POST",
            f"/ledgers/{ledger_id}/operations",
            json_data={
                "participant": participant,
                "amount": int(amount),
                "authority": authority_id,
                "payer": payer_id,
                "epoch": epoch,
            },
        )
        return LedgerOperation(
            ledger_id=ledger_id,
            participant=participant,
            payload=base64.b64decode(payload["operation"]),
        )

    async def estimate_fee(self, operation: LedgerOperation) -> int:
        payload = await self._request(
            "POST",
            "/fees/estimate",
            json_data={"operation": base64.b64encode(operation.payload).decode()},
        )
        return int(payload["fee"])

    async def get_balance(self, account: str) -> int:
        payload = await self._request("GET", f"/accounts/{account}/balance")
        return int(payload["balance"])

    async def latest_handle(self) -> str:
        payload = await self._request("GET", "/handles/latest")
        return str(payload["handle"])

    async def submit(
        self, operation: LedgerOperation, signers: Sequence[Signer], timeout: float
    ) -> str:
        """Sign ``operation`` and submit it, returning the ledger reference."""
        if not signers:
            raise LedgerError("At least one signer is required")
        message = operation.payload + (operation.handle or "").encode("utf-8")
        signatures = [
            {
                "signer": signer.public_id,
                "signature": base64.b64encode(signer.sign(message)).decode(),
            }
            for signer in signers
        ]
        payload = await self._request(
            "POST",
            "/operations/submit",
            json_data={
                "operation": base64.b64encode(operation.payload).decode(),
                "handle": operation.handle,
                "signatures": signatures,
            },
            timeout=timeout,
        )
        reference = payload.get("reference")
        if not reference:
            raise LedgerError("Ledger accepted the operation without a reference")
        return str(reference)

    async def close(self) -> None:
        """Clean up underlying HTTP client resources."""

        async with self._client_lock:
            if self._client is not None:
                await self._client.aclose()
                self._client = None
