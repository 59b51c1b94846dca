"""Async client for a bloXroute-style bundle relay."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx

from .base import BundleRelay
from ..core.recovery.errors import RelayError


DEFAULT_BUILDERS: Dict[str, str] = {"all": ""}


class BloxrouteRelay(BundleRelay):
    """Thin wrapper around the blxr_simulate_bundle / blxr_submit_bundle methods."""

    name = "bloxroute"

    def __init__(
        self,
        endpoint: str,
        auth_header: str,
        *,
        timeout_ms: int = 30000,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.endpoint = endpoint.rstrip("/")
        self._auth_header = auth_header
        self.timeout_s = timeout_ms / 1000.0
        self._transport = transport

    async def ready(self) -> bool:
        return bool(self.endpoint and self._auth_header)

    async def health_check(self) -> Dict[str, Any]:
        if not await self.ready():
            return {"status": "disabled", "reason": "Relay endpoint or credentials not configured"}
        return {"status": "configured", "endpoint": self.endpoint}

    def _headers(self) -> Dict[str, str]:
        return {
            "content-type": "application/json",
            "authorization": self._auth_header,
        }

    async def _request(self, method: str, params: Dict[str, Any]) -> Dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout_s, transport=self._transport) as client:
            response = await client.post(
                self.endpoint,
                json={"id": "1", "method": method, "params": params},
                headers=self._headers(),
            )
            response.raise_for_status()
            payload = response.json()

        if payload.get("error"):
            error = payload["error"]
            if isinstance(error, dict):
                raise RelayError(
                    error.get("message") or error.get("data") or "Relay error",
                    code=error.get("code"),
                    details=error,
                )
            raise RelayError(str(error))
        return payload.get("result", payload)

    async def simulate(
        self,
        payloads: List[str],
        target_block_hex: str,
        network_tag: str,
    ) -> Dict[str, Any]:
        return await self._request(
            "blxr_simulate_bundle",
            {
                "transaction": list(payloads),
                "block_number": target_block_hex,
                "blockchain_network": network_tag,
            },
        )

    async def submit(
        self,
        payloads: List[str],
        target_block_hex: str,
        network_tag: str,
        builders: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        return await self._request(
            "blxr_submit_bundle",
            {
                "transaction": list(payloads),
                "blockchain_network": network_tag,
                "block_number": target_block_hex,
                "mev_builders": builders or DEFAULT_BUILDERS,
            },
        )

    def simulation_failures(self, result: Dict[str, Any]) -> List[Dict[str, Any]]:
        if not isinstance(result, dict):
            return []
        failures = []
        for index, tx in enumerate(result.get("results") or []):
            if isinstance(tx, dict) and (tx.get("error") or tx.get("revert")):
                failures.append(
                    {
                        "index": index,
                        "txHash": tx.get("txHash"),
                        "error": tx.get("error"),
                        "revert": tx.get("revert"),
                    }
                )
        return failures
