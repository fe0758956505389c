from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from copytrader.aggregation.models import AggregatedTrade, TradeEvent, derive_key
from copytrader.common.timeutils import ensure_aware_utc, utc_now

logger = logging.getLogger(__name__)


class AggregationBuffer:
    """
    In-memory map of aggregation key -> AggregatedTrade.

    - Owned by a single executor task; no locking.
    - Insertion order is preserved (dict), so `snapshot()` is first-seen order.
    - `merge` is idempotent per trade id while the owning aggregate is live:
      unprocessed records are re-read from the store every cycle until their
      aggregate reaches a terminal decision.
    """

    def __init__(self) -> None:
        self._aggregates: dict[str, AggregatedTrade] = {}
        self._key_by_trade_id: dict[str, str] = {}

        # Observability counters
        self.events_merged = 0
        self.duplicates_skipped = 0
        self.aggregates_created = 0
        self.aggregates_removed = 0

    def __len__(self) -> int:
        return len(self._aggregates)

    def __contains__(self, key: object) -> bool:
        return key in self._aggregates

    def get(self, key: str) -> AggregatedTrade | None:
        return self._aggregates.get(key)

    def merge(self, event: TradeEvent, now: datetime | None = None) -> None:
        if event.id in self._key_by_trade_id:
            self.duplicates_skipped += 1
            return

        now_utc = ensure_aware_utc(now or utc_now())
        key = derive_key(event)
        agg = self._aggregates.get(key)
        if agg is None:
            self._aggregates[key] = AggregatedTrade.new(event=event, now=now_utc)
            self.aggregates_created += 1
            logger.debug("aggregate opened: %s", key)
        else:
            agg.apply(event=event, now=now_utc)
        self._key_by_trade_id[event.id] = key
        self.events_merged += 1

    def snapshot(self) -> list[tuple[str, AggregatedTrade]]:
        return list(self._aggregates.items())

    def remove(self, key: str) -> None:
        agg = self._aggregates.pop(key, None)
        if agg is None:
            return
        for trade_id in agg.trade_ids:
            self._key_by_trade_id.pop(trade_id, None)
        self.aggregates_removed += 1

    def ops_snapshot(self) -> dict[str, Any]:
        """
        Lightweight snapshot for logs.
        """
        return {
            "live_aggregates": len(self._aggregates),
            "buffered_trades": len(self._key_by_trade_id),
            "events_merged": self.events_merged,
            "duplicates_skipped": self.duplicates_skipped,
            "aggregates_created": self.aggregates_created,
            "aggregates_removed": self.aggregates_removed,
        }
