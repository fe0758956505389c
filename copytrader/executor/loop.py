from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Sequence

from copytrader.aggregation.buffer import AggregationBuffer
from copytrader.aggregation.models import AggregatedTrade, TradeEvent
from copytrader.aggregation.readiness import ReadinessEvaluator
from copytrader.common.logging import bind_request_id, log_event
from copytrader.common.shutdown import StopToken
from copytrader.common.timeutils import ensure_aware_utc, utc_now
from copytrader.execution.models import (
    STATUS_LOST_AFTER_MARK,
    STATUS_MARK_FAILED,
    STATUS_REJECTED,
    STATUS_SUBMITTED,
    ExecutionResult,
)
from copytrader.execution.pipeline import ExecutionPipeline
from copytrader.persistence.trade_store import TradeStore

logger = logging.getLogger(__name__)


class ExecutorState(str, Enum):
    INITIALIZING = "initializing"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


@dataclass
class ExecutorStats:
    cycles: int = 0
    events_read: int = 0
    read_errors: int = 0
    batches_ready: int = 0
    orders_submitted: int = 0
    orders_rejected: int = 0
    orders_lost: int = 0
    heartbeats: int = 0
    iteration_errors: int = 0


class TradeExecutor:
    """
    Poll -> aggregate -> evaluate -> execute, once per cycle, until stopped.

    Lifecycle: INITIALIZING -> RUNNING -> STOPPING -> STOPPED.
    `request_stop()` lets the current iteration finish; no new one starts.
    """

    def __init__(
        self,
        *,
        tracked_addresses: Sequence[str],
        store: TradeStore,
        pipeline: ExecutionPipeline,
        buffer: AggregationBuffer,
        evaluator: ReadinessEvaluator,
        aggregation_enabled: bool,
        loop_delay_s: float = 0.3,
        idle_heartbeat_s: float = 60.0,
        stop_token: StopToken | None = None,
        clock: Callable[[], datetime] = utc_now,
        dry_run: bool = False,
    ) -> None:
        self.tracked_addresses = list(tracked_addresses)
        self._store = store
        self._pipeline = pipeline
        self.buffer = buffer
        self._evaluator = evaluator
        self.aggregation_enabled = bool(aggregation_enabled)
        self.loop_delay_s = max(0.0, float(loop_delay_s))
        self.idle_heartbeat = timedelta(seconds=float(idle_heartbeat_s))
        self.stop_token = stop_token or StopToken()
        self._clock = clock
        self.dry_run = bool(dry_run)

        self.state = ExecutorState.INITIALIZING
        self.stats = ExecutorStats()
        self._last_check: datetime | None = None

    def request_stop(self, *, reason: str | None = None) -> None:
        self.stop_token.request_stop(reason=reason)
        if self.state in (ExecutorState.INITIALIZING, ExecutorState.RUNNING):
            self.state = ExecutorState.STOPPING

    async def _read_events(self) -> list[TradeEvent]:
        events: list[TradeEvent] = []
        for address in self.tracked_addresses:
            try:
                found = await self._store.find_unprocessed(address)
            except Exception as e:
                self.stats.read_errors += 1
                log_event(
                    logger,
                    "executor.read_failed",
                    severity="ERROR",
                    message="failed to read unprocessed trades",
                    user_address=address,
                    error=f"{type(e).__name__}: {e}",
                )
                continue
            events.extend(found)
        self.stats.events_read += len(events)
        return events

    def _record(self, result: ExecutionResult) -> None:
        if result.status == STATUS_SUBMITTED:
            self.stats.orders_submitted += 1
        elif result.status == STATUS_REJECTED:
            self.stats.orders_rejected += 1
        elif result.status in (STATUS_MARK_FAILED, STATUS_LOST_AFTER_MARK):
            self.stats.orders_lost += 1

    async def run_once(self, now: datetime | None = None) -> list[ExecutionResult]:
        now_utc = ensure_aware_utc(now or self._clock())
        if self._last_check is None:
            self._last_check = now_utc
        self.stats.cycles += 1

        events = await self._read_events()

        batches: list[AggregatedTrade] = []
        if self.aggregation_enabled:
            if events:
                before = self.buffer.events_merged
                for ev in events:
                    self.buffer.merge(ev, now=now_utc)
                merged = self.buffer.events_merged - before
                if merged:
                    log_event(
                        logger,
                        "aggregation.merged",
                        message=f"{merged} new trade(s) added to aggregation buffer",
                        merged=merged,
                        **self.buffer.ops_snapshot(),
                    )
            batches = await self._evaluator.evaluate(now=now_utc)

        results: list[ExecutionResult] = []
        if batches:
            self.stats.batches_ready += len(batches)
            log_event(logger, "executor.batches_ready", message=f"{len(batches)} aggregate(s) ready", count=len(batches))
            for agg in batches:
                result = await self._pipeline.execute(agg)
                self._record(result)
                results.append(result)
            self._last_check = now_utc
        elif now_utc - self._last_check > self.idle_heartbeat:
            self.stats.heartbeats += 1
            log_event(
                logger,
                "executor.heartbeat",
                message="waiting for new trades",
                **self.buffer.ops_snapshot(),
            )
            self._last_check = now_utc

        return results

    async def run(self) -> ExecutorStats:
        self.state = ExecutorState.INITIALIZING
        self._last_check = ensure_aware_utc(self._clock())
        log_event(
            logger,
            "executor.startup",
            message=f"executor started for {len(self.tracked_addresses)} tracked wallet(s)",
            tracked_addresses=self.tracked_addresses,
            aggregation_enabled=self.aggregation_enabled,
            aggregation_window_s=self._evaluator.window.total_seconds(),
            aggregation_min_total_usd=self._evaluator.minimum_total,
            dry_run=self.dry_run,
        )
        if not self.aggregation_enabled:
            log_event(
                logger,
                "executor.aggregation_disabled",
                severity="WARNING",
                message="trade aggregation is disabled; no orders will be produced",
            )

        if not self.stop_token.is_set():
            self.state = ExecutorState.RUNNING

        while not self.stop_token.is_set():
            with bind_request_id():
                try:
                    await self.run_once()
                except Exception:
                    self.stats.iteration_errors += 1
                    logger.exception("executor iteration failed", extra={"event_type": "executor.iteration_error"})
            if self.stop_token.is_set():
                break
            await self.stop_token.wait(self.loop_delay_s)

        self.state = ExecutorState.STOPPING
        self._shutdown()
        return self.stats

    def _shutdown(self) -> None:
        self.state = ExecutorState.STOPPED
        fields: dict[str, Any] = asdict(self.stats)
        log_event(
            logger,
            "executor.stopped",
            message="executor stopped",
            reason=self.stop_token.reason,
            buffered_aggregates=len(self.buffer),
            **fields,
        )
