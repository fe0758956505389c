"""
USDC balance lookup over a plain JSON-RPC `eth_call`.

balanceOf(address) is ERC-20 selector 0x70a08231 followed by the address left-padded
to 32 bytes. USDC carries 6 decimals.
"""

from __future__ import annotations

import itertools
import re
from typing import Any, Protocol

import httpx

from copytrader.common.errors import RemoteCallError

# Bridged USDC (USDC.e) on Polygon.
DEFAULT_USDC_CONTRACT = "0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174"
USDC_DECIMALS = 6

_BALANCE_OF_SELECTOR = "0x70a08231"
_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


class BalanceClient(Protocol):
    async def get_balance(self, address: str) -> float:
        ...


def encode_balance_of(address: str) -> str:
    a = str(address or "").strip()
    if not _ADDRESS_RE.match(a):
        raise ValueError(f"invalid address: {address!r}")
    return _BALANCE_OF_SELECTOR + a[2:].lower().rjust(64, "0")


class UsdcBalanceClient:
    def __init__(
        self,
        rpc_url: str,
        *,
        contract_address: str = DEFAULT_USDC_CONTRACT,
        client: httpx.AsyncClient | None = None,
        timeout_s: float = 15.0,
    ) -> None:
        self._rpc_url = str(rpc_url)
        self._contract = str(contract_address)
        self._timeout_s = float(timeout_s)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=self._timeout_s)
        self._ids = itertools.count(1)

    async def get_balance(self, address: str) -> float:
        op = f"usdc_balance[{address}]"
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": "eth_call",
            "params": [{"to": self._contract, "data": encode_balance_of(address)}, "latest"],
        }
        try:
            response = await self._client.post(self._rpc_url, json=payload, timeout=self._timeout_s)
            response.raise_for_status()
            decoded: Any = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise RemoteCallError(op, e) from e

        if not isinstance(decoded, dict):
            raise RemoteCallError(op, ValueError("malformed JSON-RPC response"))
        if decoded.get("error"):
            raise RemoteCallError(op, RuntimeError(f"rpc error: {decoded['error']}"))

        result = decoded.get("result")
        try:
            raw = int(str(result), 16) if result not in (None, "0x") else 0
        except ValueError as e:
            raise RemoteCallError(op, e) from e
        return raw / float(10**USDC_DECIMALS)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
