from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from copytrader.aggregation.buffer import AggregationBuffer
from copytrader.aggregation.models import AggregatedTrade
from copytrader.common.logging import log_event
from copytrader.common.timeutils import ensure_aware_utc, utc_now

if TYPE_CHECKING:
    from copytrader.persistence.trade_store import TradeStore

logger = logging.getLogger(__name__)


class ReadinessEvaluator:
    """
    Once-per-cycle terminal decision for buffered aggregates.

    For each aggregate whose window has elapsed (`now - window_start >= window`):
    - it is removed from the buffer first (at most one terminal decision per aggregate)
    - total >= minimum_total: returned as ready, in first-seen order
    - otherwise: every constituent is flagged filtered in the store and dropped

    Aggregates still inside their window are left untouched.
    """

    def __init__(
        self,
        buffer: AggregationBuffer,
        store: "TradeStore",
        *,
        window: timedelta,
        minimum_total: float,
    ) -> None:
        if window.total_seconds() < 0:
            raise ValueError("window must be >= 0")
        if minimum_total < 0:
            raise ValueError("minimum_total must be >= 0")
        self._buffer = buffer
        self._store = store
        self.window = window
        self.minimum_total = float(minimum_total)

        self.ready_total = 0
        self.below_threshold_total = 0
        self.mark_filtered_failures = 0

    def is_terminal(self, agg: AggregatedTrade, *, now: datetime) -> bool:
        return ensure_aware_utc(now) - agg.window_start >= self.window

    async def evaluate(self, now: datetime | None = None) -> list[AggregatedTrade]:
        now_utc = ensure_aware_utc(now or utc_now())
        ready: list[AggregatedTrade] = []

        for key, agg in self._buffer.snapshot():
            if not self.is_terminal(agg, now=now_utc):
                continue

            self._buffer.remove(key)
            if agg.total_usdc_size >= self.minimum_total:
                self.ready_total += 1
                ready.append(agg)
                continue

            self.below_threshold_total += 1
            await self._discard(agg)

        return ready

    async def _discard(self, agg: AggregatedTrade) -> None:
        for trade in agg.trades:
            try:
                await self._store.mark_filtered(trade.user_address, trade.id)
            except Exception as e:
                self.mark_filtered_failures += 1
                log_event(
                    logger,
                    "aggregation.mark_filtered_failed",
                    severity="ERROR",
                    message="failed to flag below-threshold trade as filtered",
                    trade_id=trade.id,
                    user_address=trade.user_address,
                    aggregation_key=agg.key,
                    error=f"{type(e).__name__}: {e}",
                )

        log_event(
            logger,
            "aggregation.below_threshold",
            message=(
                f"aggregate below minimum: {len(agg.trades)} trades, "
                f"${agg.total_usdc_size:.2f} < ${self.minimum_total:.2f}"
            ),
            minimum_total_usd=self.minimum_total,
            **agg.to_log_dict(),
        )
