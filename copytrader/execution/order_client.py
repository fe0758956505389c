from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol

import httpx

from copytrader.aggregation.models import Side
from copytrader.common.errors import ConfigError, RemoteCallError, SecretError
from copytrader.common.logging import log_event
from copytrader.common.secrets import get_secret
from copytrader.execution.models import SyntheticOrder
from copytrader.marketdata.positions import Position

logger = logging.getLogger(__name__)

ORDER_SERVICE_API_KEY_SECRET = "ORDER_SERVICE_API_KEY"


def resolve_order_service_api_key(*, required: bool = False) -> Optional[str]:
    """
    Look up the order-service bearer token once, at startup.

    An optional key resolves to None when the secret or its project is absent.
    Anything else that stops the lookup (a missing required key, denied access)
    is a ConfigError, so the worker fails before it marks any trade.
    """
    try:
        return get_secret(ORDER_SERVICE_API_KEY_SECRET, required=required)
    except SecretError as e:
        raise ConfigError(f"order service API key unavailable: {e}") from e


class OrderClient(Protocol):
    async def submit(
        self,
        side: Side,
        own_position: Position | None,
        counterparty_position: Position | None,
        order: SyntheticOrder,
        own_balance: float,
        counterparty_balance: float,
        counterparty_address: str,
    ) -> bool:
        """
        Returns True when the order was accepted, False when it was rejected.
        Transport failures raise RemoteCallError.
        """
        ...


def build_order_payload(
    *,
    side: Side,
    own_position: Position | None,
    counterparty_position: Position | None,
    order: SyntheticOrder,
    own_balance: float,
    counterparty_balance: float,
    counterparty_address: str,
) -> dict[str, Any]:
    return {
        "side": side,
        "order": order.to_payload(),
        "own_position": own_position.model_dump(mode="json") if own_position else None,
        "counterparty_position": counterparty_position.model_dump(mode="json") if counterparty_position else None,
        "own_balance": float(own_balance),
        "counterparty_balance": float(counterparty_balance),
        "counterparty_address": counterparty_address,
    }


class HttpOrderClient:
    """
    Submits synthetic orders to the order service as JSON.

    - 2xx: accepted unless the body says `{"accepted": false}`
    - 4xx: rejected (returns False)
    - 5xx / transport errors: RemoteCallError (never retried here)
    """

    def __init__(
        self,
        base_url: str,
        *,
        client: httpx.AsyncClient | None = None,
        timeout_s: float = 15.0,
        api_key: Optional[str] = None,
    ) -> None:
        self._base_url = str(base_url).rstrip("/")
        self._timeout_s = float(timeout_s)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=self._timeout_s)
        self._headers = {"Content-Type": "application/json"}
        if api_key:
            self._headers["Authorization"] = f"Bearer {api_key}"

    async def submit(
        self,
        side: Side,
        own_position: Position | None,
        counterparty_position: Position | None,
        order: SyntheticOrder,
        own_balance: float,
        counterparty_balance: float,
        counterparty_address: str,
    ) -> bool:
        payload = build_order_payload(
            side=side,
            own_position=own_position,
            counterparty_position=counterparty_position,
            order=order,
            own_balance=own_balance,
            counterparty_balance=counterparty_balance,
            counterparty_address=counterparty_address,
        )
        op = f"order_submit[{order.condition_id}]"
        try:
            response = await self._client.post(
                f"{self._base_url}/orders",
                json=payload,
                headers=self._headers,
                timeout=self._timeout_s,
            )
        except httpx.HTTPError as e:
            raise RemoteCallError(op, e) from e

        if 400 <= response.status_code < 500:
            log_event(
                logger,
                "order.rejected",
                severity="WARNING",
                status_code=response.status_code,
                body=response.text[:500],
                condition_id=order.condition_id,
            )
            return False
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise RemoteCallError(op, e) from e

        try:
            decoded = response.json() if response.content else {}
        except ValueError:
            decoded = {}
        if isinstance(decoded, dict) and decoded.get("accepted") is False:
            log_event(logger, "order.rejected", severity="WARNING", body=decoded, condition_id=order.condition_id)
            return False
        return True

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


@dataclass(frozen=True, slots=True)
class ShadowSubmission:
    payload: dict[str, Any]


class ShadowOrderClient:
    """
    Dry-run order client:
    - logs the order it would have sent
    - records it in memory
    - never performs network I/O
    - always reports success
    """

    def __init__(self) -> None:
        self.submissions: list[ShadowSubmission] = []

    async def submit(
        self,
        side: Side,
        own_position: Position | None,
        counterparty_position: Position | None,
        order: SyntheticOrder,
        own_balance: float,
        counterparty_balance: float,
        counterparty_address: str,
    ) -> bool:
        payload = build_order_payload(
            side=side,
            own_position=own_position,
            counterparty_position=counterparty_position,
            order=order,
            own_balance=own_balance,
            counterparty_balance=counterparty_balance,
            counterparty_address=counterparty_address,
        )
        self.submissions.append(ShadowSubmission(payload=payload))
        log_event(
            logger,
            "order.shadow_submit",
            message=f"[dry-run] {side} ${order.usdc_size:.2f} @ {order.price:.4f} on {order.slug or order.condition_id}",
            order=payload,
        )
        return True
