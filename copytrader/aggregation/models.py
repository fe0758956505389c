from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal, Mapping

from copytrader.common.errors import TradeEventError
from copytrader.common.timeutils import ensure_aware_utc, parse_timestamp

Side = Literal["BUY", "SELL"]

DEFAULT_SIDE: Side = "BUY"
_SIDES: frozenset[str] = frozenset({"BUY", "SELL"})


def _get_field(obj: Mapping[str, Any], *names: str) -> Any:
    """
    Fetch the first present field; activity records mix camelCase (feed payloads)
    and snake_case (rows written by the ingestion service).
    """
    for n in names:
        if n in obj and obj[n] is not None:
            return obj[n]
    return None


def _as_number(value: Any, *, name: str, trade_id: str) -> float:
    if value is None:
        raise TradeEventError(f"missing required field: {name}", trade_id=trade_id)
    if isinstance(value, bool):
        raise TradeEventError(f"{name} must be numeric, got bool", trade_id=trade_id)
    try:
        out = float(value)
    except (TypeError, ValueError) as e:
        raise TradeEventError(f"{name} must be numeric, got {value!r}", trade_id=trade_id) from e
    if not math.isfinite(out):
        raise TradeEventError(f"{name} must be finite, got {value!r}", trade_id=trade_id)
    if out < 0:
        raise TradeEventError(f"{name} must be >= 0, got {value!r}", trade_id=trade_id)
    return out


def _as_epoch_seconds(value: Any, *, trade_id: str) -> int | None:
    if value is None:
        return None
    try:
        return int(parse_timestamp(value).timestamp())
    except (TypeError, ValueError, OverflowError, OSError) as e:
        raise TradeEventError(f"unparseable timestamp: {value!r}", trade_id=trade_id) from e


def _as_text(value: Any) -> str | None:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


@dataclass(frozen=True, slots=True)
class TradeEvent:
    """
    One trade by one tracked wallet, as stored by the ingestion service.

    `usdc_size` is the traded size in quote currency (what aggregation sums);
    `size` is the outcome-token amount and is descriptive only.
    """

    id: str
    user_address: str
    condition_id: str
    asset: str
    side: Side | None
    usdc_size: float
    price: float

    transaction_hash: str | None = None
    timestamp: int | None = None
    size: float | None = None
    outcome_index: int | None = None
    title: str | None = None
    slug: str | None = None
    event_slug: str | None = None
    outcome: str | None = None
    icon: str | None = None
    name: str | None = None
    pseudonym: str | None = None

    filtered: bool = False
    executed_at_ms: int = 0

    @classmethod
    def from_document(cls, doc_id: str, data: Mapping[str, Any], *, user_address: str) -> "TradeEvent":
        """
        Build a TradeEvent from a stored activity document.

        Raises TradeEventError when a required field is missing or malformed.
        """
        trade_id = str(doc_id or "").strip()
        if not trade_id:
            raise TradeEventError("missing document id")

        condition_id = _as_text(_get_field(data, "conditionId", "condition_id"))
        if condition_id is None:
            raise TradeEventError("missing required field: conditionId", trade_id=trade_id)
        asset = _as_text(_get_field(data, "asset", "asset_id"))
        if asset is None:
            raise TradeEventError("missing required field: asset", trade_id=trade_id)

        raw_side = _as_text(_get_field(data, "side"))
        side: Side | None = None
        if raw_side is not None:
            upper = raw_side.upper()
            if upper not in _SIDES:
                raise TradeEventError(f"unknown side: {raw_side!r}", trade_id=trade_id)
            side = upper  # type: ignore[assignment]

        usdc_size = _as_number(_get_field(data, "usdcSize", "usdc_size"), name="usdcSize", trade_id=trade_id)
        price = _as_number(_get_field(data, "price"), name="price", trade_id=trade_id)

        raw_size = _get_field(data, "size")
        size = _as_number(raw_size, name="size", trade_id=trade_id) if raw_size is not None else None
        raw_outcome_index = _get_field(data, "outcomeIndex", "outcome_index")

        return cls(
            id=trade_id,
            user_address=str(user_address).strip(),
            condition_id=condition_id,
            asset=asset,
            side=side,
            usdc_size=usdc_size,
            price=price,
            transaction_hash=_as_text(_get_field(data, "transactionHash", "transaction_hash")),
            timestamp=_as_epoch_seconds(_get_field(data, "timestamp"), trade_id=trade_id),
            size=size,
            outcome_index=int(raw_outcome_index) if isinstance(raw_outcome_index, int) else None,
            title=_as_text(_get_field(data, "title")),
            slug=_as_text(_get_field(data, "slug")),
            event_slug=_as_text(_get_field(data, "eventSlug", "event_slug")),
            outcome=_as_text(_get_field(data, "outcome")),
            icon=_as_text(_get_field(data, "icon")),
            name=_as_text(_get_field(data, "name")),
            pseudonym=_as_text(_get_field(data, "pseudonym")),
            filtered=bool(_get_field(data, "filtered") or False),
            executed_at_ms=int(
                _as_number(_get_field(data, "executed_at_ms", "executedAtMs") or 0, name="executed_at_ms", trade_id=trade_id)
            ),
        )

    @property
    def effective_side(self) -> Side:
        return self.side or DEFAULT_SIDE


def derive_key(event: TradeEvent) -> str:
    """
    Grouping key: wallet, market, asset and side. Unset side counts as BUY.
    """
    return f"{event.user_address}:{event.condition_id}:{event.asset}:{event.effective_side}"


@dataclass(slots=True)
class AggregatedTrade:
    user_address: str
    condition_id: str
    asset: str
    side: Side
    slug: str | None
    event_slug: str | None

    trades: list[TradeEvent]
    total_usdc_size: float
    average_price: float

    window_start: datetime
    last_activity: datetime

    trade_ids: set[str] = field(default_factory=set)

    @classmethod
    def new(cls, *, event: TradeEvent, now: datetime) -> "AggregatedTrade":
        now = ensure_aware_utc(now)
        return cls(
            user_address=event.user_address,
            condition_id=event.condition_id,
            asset=event.asset,
            side=event.effective_side,
            slug=event.slug,
            event_slug=event.event_slug,
            trades=[event],
            total_usdc_size=event.usdc_size,
            average_price=event.price,
            window_start=now,
            last_activity=now,
            trade_ids={event.id},
        )

    @property
    def key(self) -> str:
        return f"{self.user_address}:{self.condition_id}:{self.asset}:{self.side}"

    def apply(self, *, event: TradeEvent, now: datetime) -> None:
        """
        Fold one more event in. O(1): the weighted average is updated from the
        previous (average, total) pair, never recomputed over `trades`.
        """
        new_total = self.total_usdc_size + event.usdc_size
        if new_total > 0:
            self.average_price = (
                self.average_price * self.total_usdc_size + event.price * event.usdc_size
            ) / new_total
        self.total_usdc_size = new_total
        self.trades.append(event)
        self.trade_ids.add(event.id)
        self.last_activity = ensure_aware_utc(now)

    def to_log_dict(self) -> dict[str, Any]:
        return {
            "aggregation_key": self.key,
            "trade_count": len(self.trades),
            "total_usdc_size": round(self.total_usdc_size, 6),
            "average_price": round(self.average_price, 6),
            "slug": self.slug or self.event_slug,
            "window_start": self.window_start.isoformat(),
        }
