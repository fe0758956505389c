"""
Ready aggregate -> one submitted order.

Ordering per aggregate:
1) mark every constituent executed in the store
2) fetch own/counterparty positions and own balance (concurrently)
3) synthesize one order and submit it

Step 1 runs before any submission. A crash or failure after it loses the order
(the records no longer surface as unprocessed) but can never send it twice.
If step 1 fails partway the batch is abandoned whole: the failed and not yet
marked constituents are flagged filtered, so no remainder of the batch comes back
as a smaller aggregate.
Failures after the mark are logged as `execution.lost_after_mark` with the ids
involved so an operator can replay them.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, TypeVar

from copytrader.aggregation.models import AggregatedTrade
from copytrader.common.logging import log_event
from copytrader.common.timeutils import to_epoch_ms, utc_now
from copytrader.execution.models import (
    STATUS_LOST_AFTER_MARK,
    STATUS_MARK_FAILED,
    STATUS_REJECTED,
    STATUS_SUBMITTED,
    ExecutionResult,
    SyntheticOrder,
)
from copytrader.execution.order_client import OrderClient
from copytrader.marketdata.balance import BalanceClient
from copytrader.marketdata.positions import PositionsClient, find_position, total_current_value
from copytrader.persistence.trade_store import TradeStore

T = TypeVar("T")
logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return to_epoch_ms(utc_now())


class ExecutionPipeline:
    def __init__(
        self,
        *,
        store: TradeStore,
        market_data: PositionsClient,
        balances: BalanceClient,
        order_client: OrderClient,
        own_address: str,
        call_timeout_s: float = 15.0,
        clock_ms: Callable[[], int] = _now_ms,
    ) -> None:
        self._store = store
        self._market_data = market_data
        self._balances = balances
        self._order_client = order_client
        self._own_address = str(own_address)
        self._timeout_s = float(call_timeout_s)
        self._clock_ms = clock_ms

        self.submitted = 0
        self.rejected = 0
        self.mark_failed = 0
        self.lost_after_mark = 0

    async def _bounded(self, coro: Awaitable[T]) -> T:
        return await asyncio.wait_for(coro, timeout=self._timeout_s)

    async def _flag_abandoned(self, agg: AggregatedTrade, trade_ids: list[str]) -> list[str]:
        """
        Best-effort filtered flag for the part of a batch that was never marked
        executed. Returns the ids that could not be flagged.
        """
        unflagged: list[str] = []
        for trade_id in trade_ids:
            try:
                await self._bounded(self._store.mark_filtered(agg.user_address, trade_id))
            except Exception as e:
                unflagged.append(trade_id)
                log_event(
                    logger,
                    "execution.abandon_flag_failed",
                    severity="ERROR",
                    message="could not flag abandoned trade as filtered; it may be re-read",
                    trade_id=trade_id,
                    error=f"{type(e).__name__}: {e}",
                    **agg.to_log_dict(),
                )
        return unflagged

    async def execute(self, agg: AggregatedTrade) -> ExecutionResult:
        trade_ids = [t.id for t in agg.trades]
        timings: dict[str, int] = {}
        t0 = time.perf_counter()

        # 1) Mark executed before anything leaves the process.
        executed_at_ms = self._clock_ms()
        marked: list[str] = []
        for trade in agg.trades:
            try:
                await self._bounded(self._store.mark_executed(trade.user_address, trade.id, executed_at_ms))
            except Exception as e:
                self.mark_failed += 1
                err = f"{type(e).__name__}: {e}"
                abandoned = trade_ids[len(marked):]
                unflagged = await self._flag_abandoned(agg, abandoned)
                log_event(
                    logger,
                    "execution.mark_failed",
                    severity="ERROR",
                    message="failed to mark trades executed; batch abandoned, nothing submitted",
                    trade_ids=trade_ids,
                    marked_trade_ids=marked,
                    failed_trade_id=trade.id,
                    abandoned_trade_ids=abandoned,
                    unflagged_trade_ids=unflagged,
                    error=err,
                    **agg.to_log_dict(),
                )
                return ExecutionResult(status=STATUS_MARK_FAILED, trade_ids=trade_ids, error=err)
            marked.append(trade.id)
        timings["mark_ms"] = int((time.perf_counter() - t0) * 1000)

        order = SyntheticOrder.from_aggregate(agg)
        try:
            # 2) Supporting data, concurrently.
            t1 = time.perf_counter()
            own_positions, counterparty_positions, own_balance = await asyncio.gather(
                self._bounded(self._market_data.get_positions(self._own_address)),
                self._bounded(self._market_data.get_positions(agg.user_address)),
                self._bounded(self._balances.get_balance(self._own_address)),
            )
            timings["fetch_ms"] = int((time.perf_counter() - t1) * 1000)

            counterparty_balance = total_current_value(counterparty_positions)
            own_position = find_position(own_positions, agg.condition_id)
            counterparty_position = find_position(counterparty_positions, agg.condition_id)

            log_event(
                logger,
                "execution.submitting",
                message=(
                    f"copying {len(agg.trades)} trades: {order.side} ${order.usdc_size:.2f} "
                    f"@ {order.price:.4f} on {order.slug or order.condition_id}"
                ),
                own_balance=own_balance,
                counterparty_balance=counterparty_balance,
                **agg.to_log_dict(),
            )

            # 3) Submit.
            t2 = time.perf_counter()
            accepted = await self._bounded(
                self._order_client.submit(
                    order.side,
                    own_position,
                    counterparty_position,
                    order,
                    own_balance,
                    counterparty_balance,
                    agg.user_address,
                )
            )
            timings["submit_ms"] = int((time.perf_counter() - t2) * 1000)
        except Exception as e:
            self.lost_after_mark += 1
            err = f"{type(e).__name__}: {e}"
            log_event(
                logger,
                "execution.lost_after_mark",
                severity="ERROR",
                message="trades marked executed but order was not submitted",
                trade_ids=trade_ids,
                error=err,
                **agg.to_log_dict(),
            )
            return ExecutionResult(
                status=STATUS_LOST_AFTER_MARK, trade_ids=trade_ids, order=order, error=err, timings_ms=timings
            )

        if not accepted:
            self.rejected += 1
            log_event(
                logger,
                "execution.rejected",
                severity="WARNING",
                message="order client rejected synthetic order",
                trade_ids=trade_ids,
                **agg.to_log_dict(),
            )
            return ExecutionResult(status=STATUS_REJECTED, trade_ids=trade_ids, order=order, timings_ms=timings)

        self.submitted += 1
        log_event(logger, "execution.submitted", trade_ids=trade_ids, timings_ms=timings, **agg.to_log_dict())
        return ExecutionResult(status=STATUS_SUBMITTED, trade_ids=trade_ids, order=order, timings_ms=timings)

    def ops_snapshot(self) -> dict[str, int]:
        return {
            "submitted": self.submitted,
            "rejected": self.rejected,
            "mark_failed": self.mark_failed,
            "lost_after_mark": self.lost_after_mark,
        }
