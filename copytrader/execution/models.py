from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Literal, Optional

from copytrader.aggregation.models import AggregatedTrade, Side

ExecutionStatus = Literal["submitted", "rejected", "mark_failed", "lost_after_mark"]

STATUS_SUBMITTED: ExecutionStatus = "submitted"
STATUS_REJECTED: ExecutionStatus = "rejected"
STATUS_MARK_FAILED: ExecutionStatus = "mark_failed"
STATUS_LOST_AFTER_MARK: ExecutionStatus = "lost_after_mark"


@dataclass(frozen=True, slots=True)
class SyntheticOrder:
    """
    One order descriptor standing in for every constituent of a ready aggregate.

    Size and price are aggregate values; descriptive fields come from the first
    constituent.
    """

    side: Side
    usdc_size: float
    price: float
    condition_id: str
    asset: str
    user_address: str
    trade_ids: tuple[str, ...]

    transaction_hash: Optional[str] = None
    timestamp: Optional[int] = None
    outcome_index: Optional[int] = None
    title: Optional[str] = None
    slug: Optional[str] = None
    event_slug: Optional[str] = None
    outcome: Optional[str] = None

    @classmethod
    def from_aggregate(cls, agg: AggregatedTrade) -> "SyntheticOrder":
        first = agg.trades[0]
        return cls(
            side=agg.side,
            usdc_size=agg.total_usdc_size,
            price=agg.average_price,
            condition_id=agg.condition_id,
            asset=agg.asset,
            user_address=agg.user_address,
            trade_ids=tuple(t.id for t in agg.trades),
            transaction_hash=first.transaction_hash,
            timestamp=first.timestamp,
            outcome_index=first.outcome_index,
            title=first.title,
            slug=first.slug or agg.slug,
            event_slug=first.event_slug or agg.event_slug,
            outcome=first.outcome,
        )

    def to_payload(self) -> dict[str, Any]:
        d = asdict(self)
        d["trade_ids"] = list(self.trade_ids)
        return d


@dataclass(slots=True)
class ExecutionResult:
    status: ExecutionStatus
    trade_ids: list[str]
    order: SyntheticOrder | None = None
    error: str | None = None
    timings_ms: dict[str, int] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == STATUS_SUBMITTED
