"""
Execution: ready aggregate -> synthetic order -> order client.
"""

from copytrader.execution.models import ExecutionResult, SyntheticOrder
from copytrader.execution.order_client import HttpOrderClient, OrderClient, ShadowOrderClient
from copytrader.execution.pipeline import ExecutionPipeline

__all__ = [
    "ExecutionPipeline",
    "ExecutionResult",
    "HttpOrderClient",
    "OrderClient",
    "ShadowOrderClient",
    "SyntheticOrder",
]
