"""
Trade aggregation: key derivation, the in-memory buffer and the readiness policy.

Nothing in this package performs network I/O except the readiness evaluator, which
flags discarded constituents in the trade store.
"""

from copytrader.aggregation.buffer import AggregationBuffer
from copytrader.aggregation.models import AggregatedTrade, TradeEvent, derive_key
from copytrader.aggregation.readiness import ReadinessEvaluator

__all__ = [
    "AggregatedTrade",
    "AggregationBuffer",
    "ReadinessEvaluator",
    "TradeEvent",
    "derive_key",
]
