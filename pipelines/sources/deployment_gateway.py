"""HTTP clients for the deployment gateway, the gasless relayer and the remote signer.

The gateway wraps the chain node and the factory contracts: it returns facet
cuts, simulates and broadcasts transactions and reports receipts. Requests go
through ``request_json`` without retries because the deployment orchestrator
owns the retry policy for every step.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Mapping, Sequence

import httpx

from pipelines.common import fetch_json, request_json
from pipelines.deploy.state import (
    CreateMarketRequest,
    FacetConfig,
    MetaCreateContext,
    Receipt,
    SignedPayload,
)
from pipelines.economics import BondTerms

DEPLOYMENT_GATEWAY_URL_ENV = "DEPLOYMENT_GATEWAY_URL"
RELAYER_URL_ENV = "RELAYER_URL"
SIGNER_URL_ENV = "SIGNER_URL"
DEFAULT_GATEWAY_URL = "http://localhost:8080"
DEFAULT_RECEIPT_POLL_SECONDS = 2.0
RELAYER_TIMEOUT_SECONDS = 60.0

logger = logging.getLogger(__name__)


def _transaction_hash(payload: Any) -> str:
    if isinstance(payload, Mapping):
        value = payload.get("transactionHash") or payload.get("txHash") or payload.get("hash")
        if isinstance(value, str) and value:
            return value
    raise ValueError(f"Response carries no transaction hash: {payload!r}")


def parse_receipt(payload: Mapping[str, Any]) -> Receipt:
    status = payload.get("status", True)
    if isinstance(status, str):
        success = status.lower() in {"success", "1", "0x1", "true"}
    else:
        success = bool(status)
    events = [
        {"name": str(event.get("name") or event.get("event") or ""), "args": dict(event.get("args") or {})}
        for event in payload.get("events") or []
        if isinstance(event, Mapping)
    ]
    return Receipt.model_validate(
        {
            "transactionHash": payload.get("transactionHash") or payload.get("hash"),
            "success": success,
            "blockNumber": payload.get("blockNumber"),
            "gasUsed": payload.get("gasUsed"),
            "events": events,
        }
    )


class HttpDeploymentGateway:
    """Facet configuration, chain reads and admin transactions over the gateway API."""

    def __init__(
        self,
        base_url: str | None = None,
        *,
        receipt_poll_interval: float = DEFAULT_RECEIPT_POLL_SECONDS,
        timeout: float = 30.0,
    ) -> None:
        self.base_url = (base_url or os.getenv(DEPLOYMENT_GATEWAY_URL_ENV, DEFAULT_GATEWAY_URL)).rstrip("/")
        self.receipt_poll_interval = receipt_poll_interval
        self.timeout = timeout

    def url_for(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    async def _get(self, path: str, **params: Any) -> Any:
        return await request_json(self.url_for(path), params=params or None, timeout=self.timeout)

    async def _post(self, path: str, body: Mapping[str, Any]) -> Any:
        return await request_json(self.url_for(path), method="POST", json=body, timeout=self.timeout)

    # FacetConfigSource
    async def fetch_facet_config(self) -> FacetConfig:
        return FacetConfig.model_validate(await self._get("facet-cut"))

    async def fetch_bond_terms(self) -> BondTerms:
        payload = await fetch_json(self.url_for("bond-config"), timeout=self.timeout)
        return BondTerms.from_payload(payload)

    # ChainReader
    async def meta_create_context(self, request: CreateMarketRequest) -> MetaCreateContext:
        return MetaCreateContext.model_validate(await self._post("meta-create/context", request.to_wire()))

    async def static_call(self, request: CreateMarketRequest) -> str | None:
        payload = await self._post("static-call", request.to_wire())
        if isinstance(payload, Mapping) and payload.get("ok", True) is False:
            return str(payload.get("revertReason") or "execution reverted")
        return None

    async def wait_for_receipt(self, transaction_hash: str) -> Receipt:
        """Poll until the transaction is mined. Callers bound this with a timeout."""

        while True:
            try:
                payload = await self._get(f"receipts/{transaction_hash}")
            except httpx.HTTPStatusError as exc:
                if exc.response.status_code != 404:
                    raise
                payload = None
            except httpx.TransportError as exc:
                logger.warning("Receipt poll for %s failed: %s", transaction_hash, exc)
                payload = None

            if isinstance(payload, Mapping) and payload.get("status") != "pending":
                return parse_receipt({"transactionHash": transaction_hash, **payload})
            await asyncio.sleep(self.receipt_poll_interval)

    async def missing_selectors(self, market_address: str, signatures: Sequence[str]) -> list[str]:
        payload = await self._post("selectors/missing", {"market": market_address, "signatures": list(signatures)})
        missing = payload.get("missing") if isinstance(payload, Mapping) else None
        return [str(item) for item in missing or []]

    async def session_registry(self, market_address: str) -> str | None:
        payload = await self._get(f"markets/{market_address}/session-registry")
        registry = payload.get("registry") if isinstance(payload, Mapping) else None
        return str(registry) if registry else None

    # MarketAdmin
    async def add_selectors(self, market_address: str, facet_address: str, signatures: Sequence[str]) -> str:
        payload = await self._post(
            "selectors/add",
            {"market": market_address, "facet": facet_address, "signatures": list(signatures)},
        )
        return _transaction_hash(payload)

    async def set_session_registry(self, market_address: str, registry: str) -> str:
        payload = await self._post(f"markets/{market_address}/session-registry", {"registry": registry})
        return _transaction_hash(payload)

    async def grant_role(self, role: str, account: str) -> str:
        return _transaction_hash(await self._post("roles/grant", {"role": role, "account": account}))


class WalletBroadcaster:
    """Direct mode: the gateway's funded wallet sends the create transaction."""

    def __init__(self, gateway: HttpDeploymentGateway) -> None:
        self.gateway = gateway

    async def submit(
        self,
        request: CreateMarketRequest,
        *,
        typed_data: Mapping[str, Any] | None = None,
        signature: str | None = None,
    ) -> str:
        payload = await request_json(
            self.gateway.url_for("transactions/create-market"),
            method="POST",
            json=request.to_wire(),
            timeout=self.gateway.timeout,
        )
        return _transaction_hash(payload)


class RelayerBroadcaster:
    """Sponsored mode: the relayer pays gas for a creator-signed meta request."""

    def __init__(self, url: str | None = None, *, timeout: float = RELAYER_TIMEOUT_SECONDS) -> None:
        resolved = url or os.getenv(RELAYER_URL_ENV)
        if not resolved:
            raise ValueError(f"{RELAYER_URL_ENV} must be set for sponsored deployments.")
        self.url = resolved
        self.timeout = timeout

    async def submit(
        self,
        request: CreateMarketRequest,
        *,
        typed_data: Mapping[str, Any] | None = None,
        signature: str | None = None,
    ) -> str:
        if not signature or typed_data is None:
            raise ValueError("Relayed creation requires signed typed data.")
        payload = await request_json(
            self.url,
            method="POST",
            json={
                "request": request.to_wire(),
                "message": dict(typed_data.get("message") or {}),
                "signature": signature,
            },
            timeout=self.timeout,
        )
        return _transaction_hash(payload)


class RemoteSigner:
    """Signs EIP-712 typed data on behalf of the creator wallet."""

    def __init__(self, url: str | None = None, *, timeout: float = 30.0) -> None:
        resolved = url or os.getenv(SIGNER_URL_ENV)
        if not resolved:
            raise ValueError(f"{SIGNER_URL_ENV} must be set for sponsored deployments.")
        self.url = resolved
        self.timeout = timeout

    async def sign_typed_data(self, typed_data: Mapping[str, Any]) -> SignedPayload:
        payload = await request_json(self.url, method="POST", json={"typedData": dict(typed_data)}, timeout=self.timeout)
        return SignedPayload.model_validate(payload)


__all__ = [
    "HttpDeploymentGateway",
    "WalletBroadcaster",
    "RelayerBroadcaster",
    "RemoteSigner",
    "parse_receipt",
    "DEPLOYMENT_GATEWAY_URL_ENV",
]
