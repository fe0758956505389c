from __future__ import annotations

import logging
from typing import Any, Optional, Protocol

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from copytrader.common.errors import RemoteCallError

logger = logging.getLogger(__name__)

DEFAULT_DATA_API_URL = "https://data-api.polymarket.com"
DEFAULT_PAGE_SIZE = 500
MAX_PAGES = 40


class Position(BaseModel):
    """
    One open position as reported by the Polymarket data API (`/positions`).
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    condition_id: str = Field(alias="conditionId")
    asset: str
    size: float = 0.0
    avg_price: float = Field(default=0.0, alias="avgPrice")
    current_value: float = Field(default=0.0, alias="currentValue")
    cur_price: float = Field(default=0.0, alias="curPrice")
    title: Optional[str] = None
    slug: Optional[str] = None
    outcome: Optional[str] = None


class PositionsClient(Protocol):
    async def get_positions(self, address: str) -> list[Position]:
        ...


def find_position(positions: list[Position], condition_id: str) -> Position | None:
    for p in positions:
        if p.condition_id == condition_id:
            return p
    return None


def total_current_value(positions: list[Position]) -> float:
    return float(sum(p.current_value for p in positions))


class PolymarketDataClient:
    """
    Async client for the Polymarket data API.

    `/positions` is paged: requests carry `limit` and `offset`, and paging stops at
    the first page shorter than `limit`.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_DATA_API_URL,
        *,
        client: httpx.AsyncClient | None = None,
        timeout_s: float = 15.0,
        page_size: int = DEFAULT_PAGE_SIZE,
        max_pages: int = MAX_PAGES,
    ) -> None:
        if page_size <= 0 or max_pages <= 0:
            raise ValueError("page_size and max_pages must be > 0")
        self._base_url = str(base_url).rstrip("/")
        self._timeout_s = float(timeout_s)
        self._page_size = int(page_size)
        self._max_pages = int(max_pages)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=self._timeout_s)

    async def _fetch_page(self, address: str, offset: int) -> list[Any]:
        op = f"positions[{address}]"
        try:
            response = await self._client.get(
                f"{self._base_url}/positions",
                params={"user": address, "limit": self._page_size, "offset": offset},
                timeout=self._timeout_s,
            )
            response.raise_for_status()
            decoded: Any = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise RemoteCallError(op, e) from e

        if not isinstance(decoded, list):
            raise RemoteCallError(op, ValueError(f"expected a JSON array, got {type(decoded).__name__}"))
        return decoded

    async def get_positions(self, address: str) -> list[Position]:
        out: list[Position] = []
        for page_no in range(self._max_pages):
            rows = await self._fetch_page(address, page_no * self._page_size)
            for row in rows:
                try:
                    out.append(Position.model_validate(row))
                except ValidationError as e:
                    logger.warning("skipping malformed position row for %s: %s", address, e.errors()[:1])
            if len(rows) < self._page_size:
                return out
        logger.warning(
            "positions for %s truncated at %d pages of %d", address, self._max_pages, self._page_size
        )
        return out

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
