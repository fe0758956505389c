from __future__ import annotations

import asyncio
import datetime as dt

import pytest

from copytrader.aggregation.buffer import AggregationBuffer
from copytrader.aggregation.models import TradeEvent
from copytrader.aggregation.readiness import ReadinessEvaluator

ADDR = "0x" + "a" * 40
T0 = dt.datetime(2025, 6, 1, 12, 0, 0, tzinfo=dt.timezone.utc)
WINDOW = dt.timedelta(seconds=300)


class _StoreStub:
    def __init__(self, *, fail_ids: set[str] | None = None) -> None:
        self.filtered: list[tuple[str, str]] = []
        self.fail_ids = set(fail_ids or ())

    async def find_unprocessed(self, address):  # pragma: no cover
        return []

    async def mark_filtered(self, address: str, trade_id: str) -> None:
        if trade_id in self.fail_ids:
            raise RuntimeError("firestore unavailable")
        self.filtered.append((address, trade_id))

    async def mark_executed(self, address, trade_id, executed_at_ms):  # pragma: no cover
        raise AssertionError("evaluator must never mark executed")


def _ev(trade_id: str, usdc: float, price: float = 1.0, *, cond: str = "c1") -> TradeEvent:
    return TradeEvent(
        id=trade_id, user_address=ADDR, condition_id=cond, asset="x", side="BUY", usdc_size=usdc, price=price
    )


def _setup(minimum: float, *, store: _StoreStub | None = None):
    buf = AggregationBuffer()
    st = store or _StoreStub()
    return buf, st, ReadinessEvaluator(buf, st, window=WINDOW, minimum_total=minimum)


def test_window_boundary_open_until_exactly_window():
    buf, _, ev = _setup(1.0)
    buf.merge(_ev("1", 10), now=T0)

    assert asyncio.run(ev.evaluate(now=T0 + WINDOW - dt.timedelta(milliseconds=1))) == []
    assert len(buf) == 1

    ready = asyncio.run(ev.evaluate(now=T0 + WINDOW))
    assert [a.trades[0].id for a in ready] == ["1"]
    assert len(buf) == 0


def test_threshold_is_inclusive_and_one_cent_below_is_discarded():
    buf, store, ev = _setup(150.0)
    buf.merge(_ev("exact", 150.0, cond="a"), now=T0)
    buf.merge(_ev("below", 149.99, cond="b"), now=T0)

    ready = asyncio.run(ev.evaluate(now=T0 + WINDOW))

    assert [a.condition_id for a in ready] == ["a"]
    assert store.filtered == [(ADDR, "below")]
    assert ev.ready_total == 1
    assert ev.below_threshold_total == 1


def test_scenario_three_trades_reach_minimum():
    buf, store, ev = _setup(150.0)
    buf.merge(_ev("1", 100, 1.00), now=T0)
    buf.merge(_ev("2", 50, 1.10), now=T0 + dt.timedelta(seconds=30))
    buf.merge(_ev("3", 50, 0.90), now=T0 + dt.timedelta(seconds=60))

    ready = asyncio.run(ev.evaluate(now=T0 + WINDOW))
    assert len(ready) == 1
    assert ready[0].total_usdc_size == pytest.approx(200)
    assert ready[0].average_price == pytest.approx(1.00)
    assert store.filtered == []


def test_terminal_aggregate_is_classified_at_most_once():
    buf, store, ev = _setup(150.0)
    buf.merge(_ev("small", 10), now=T0)

    assert asyncio.run(ev.evaluate(now=T0 + WINDOW)) == []
    assert asyncio.run(ev.evaluate(now=T0 + WINDOW * 2)) == []
    assert store.filtered == [(ADDR, "small")]
    assert ev.below_threshold_total == 1


def test_ready_order_follows_first_seen_order():
    buf, _, ev = _setup(1.0)
    buf.merge(_ev("1", 5, cond="z"), now=T0)
    buf.merge(_ev("2", 5, cond="y"), now=T0 + dt.timedelta(seconds=1))
    buf.merge(_ev("3", 5, cond="late"), now=T0 + WINDOW)

    ready = asyncio.run(ev.evaluate(now=T0 + WINDOW + dt.timedelta(seconds=1)))
    assert [a.condition_id for a in ready] == ["z", "y"]
    assert "late" in buf.snapshot()[0][0]


def test_mark_failure_for_one_constituent_does_not_stop_others(caplog):
    buf, store, ev = _setup(1000.0, store=_StoreStub(fail_ids={"2"}))
    for tid in ("1", "2", "3"):
        buf.merge(_ev(tid, 1), now=T0)

    with caplog.at_level("INFO"):
        ready = asyncio.run(ev.evaluate(now=T0 + WINDOW))

    assert ready == []
    assert store.filtered == [(ADDR, "1"), (ADDR, "3")]
    assert ev.mark_filtered_failures == 1
    assert len(buf) == 0

    events = [getattr(r, "event_type", None) for r in caplog.records]
    assert "aggregation.mark_filtered_failed" in events
    assert "aggregation.below_threshold" in events
    failed = [r for r in caplog.records if getattr(r, "event_type", None) == "aggregation.mark_filtered_failed"]
    assert failed[0].levelname == "ERROR"
    assert failed[0].trade_id == "2"


def test_rejects_negative_configuration():
    with pytest.raises(ValueError):
        ReadinessEvaluator(AggregationBuffer(), _StoreStub(), window=dt.timedelta(seconds=-1), minimum_total=1)
    with pytest.raises(ValueError):
        ReadinessEvaluator(AggregationBuffer(), _StoreStub(), window=WINDOW, minimum_total=-1)
