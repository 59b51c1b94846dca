"""
JSON-RPC chain provider.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

import httpx
from eth_utils import to_int

from .base import ChainProvider
from ..core.execution.models import FeeData
from ..core.recovery.errors import RpcError


class JsonRpcChainProvider(ChainProvider):
    """Chain provider speaking plain Ethereum JSON-RPC over HTTP."""

    name = "chain"
    timeout_s = 30

    def __init__(
        self,
        rpc_url: str,
        *,
        timeout_s: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.rpc_url = rpc_url
        if timeout_s is not None:
            self.timeout_s = timeout_s
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._request_id = 0

    async def ready(self) -> bool:
        return bool(self.rpc_url)

    async def health_check(self) -> Dict[str, Any]:
        if not await self.ready():
            return {"status": "disabled", "reason": "RPC URL not configured"}

        try:
            result = await self._rpc_call("eth_chainId", [])
            return {"status": "healthy", "chainId": to_int(hexstr=result)}
        except Exception as exc:
            return {"status": "error", "reason": str(exc)}

    async def get_fee_data(self) -> FeeData:
        result = await self._rpc_call("eth_gasPrice", [])
        return FeeData(gas_price=to_int(hexstr=result) if result else None)

    async def estimate_gas(self, descriptor: Dict[str, Any]) -> int:
        result = await self._rpc_call("eth_estimateGas", [_rpc_descriptor(descriptor)])
        return to_int(hexstr=result)

    async def get_transaction_count(self, address: str, block_tag: str = "pending") -> int:
        result = await self._rpc_call("eth_getTransactionCount", [address, block_tag])
        return to_int(hexstr=result)

    async def get_block_number(self) -> int:
        result = await self._rpc_call("eth_blockNumber", [])
        return to_int(hexstr=result)

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def _rpc_call(self, method: str, params: list[Any]) -> Any:
        if not self._client or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout_s, transport=self._transport)

        self._request_id += 1
        response = await self._client.post(
            self.rpc_url,
            json={"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params},
        )
        response.raise_for_status()
        payload = response.json()
        if payload.get("error"):
            error = payload["error"]
            if isinstance(error, dict):
                raise RpcError(error.get("message", "RPC error"), code=error.get("code"), details=error)
            raise RpcError(str(error))
        return payload.get("result")


def _rpc_descriptor(descriptor: Dict[str, Any]) -> Dict[str, Any]:
    """Hex-encode integer fields the way JSON-RPC expects."""
    encoded: Dict[str, Any] = {}
    for key, value in descriptor.items():
        if value is None:
            continue
        if isinstance(value, int) and not isinstance(value, bool):
            encoded[key] = hex(value)
        else:
            encoded[key] = value
    return encoded
