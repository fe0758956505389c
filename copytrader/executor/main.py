from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

import httpx

from copytrader.aggregation.buffer import AggregationBuffer
from copytrader.aggregation.readiness import ReadinessEvaluator
from copytrader.common.errors import ConfigError
from copytrader.common.logging import init_structured_logging, log_event
from copytrader.common.shutdown import StopToken, install_signal_handlers
from copytrader.execution.order_client import (
    HttpOrderClient,
    OrderClient,
    ShadowOrderClient,
    resolve_order_service_api_key,
)
from copytrader.execution.pipeline import ExecutionPipeline
from copytrader.executor.config import ExecutorConfig, validate_or_exit
from copytrader.executor.loop import TradeExecutor
from copytrader.marketdata.balance import UsdcBalanceClient
from copytrader.marketdata.positions import PolymarketDataClient
from copytrader.persistence.trade_store import FirestoreTradeStore

logger = logging.getLogger(__name__)


def build_executor(
    cfg: ExecutorConfig,
    *,
    store: FirestoreTradeStore,
    http: httpx.AsyncClient,
    stop_token: StopToken,
) -> TradeExecutor:
    timeout_s = cfg.remote_call_timeout_s

    order_client: OrderClient
    if cfg.dry_run:
        order_client = ShadowOrderClient()
    else:
        order_client = HttpOrderClient(
            str(cfg.order_service_url),
            client=http,
            timeout_s=timeout_s,
            api_key=resolve_order_service_api_key(required=cfg.order_service_api_key_required),
        )

    pipeline = ExecutionPipeline(
        store=store,
        market_data=PolymarketDataClient(cfg.data_api_url, client=http, timeout_s=timeout_s),
        balances=UsdcBalanceClient(
            cfg.rpc_url, contract_address=cfg.usdc_contract_address, client=http, timeout_s=timeout_s
        ),
        order_client=order_client,
        own_address=cfg.own_address,
        call_timeout_s=timeout_s,
    )

    buffer = AggregationBuffer()
    evaluator = ReadinessEvaluator(
        buffer,
        store,
        window=timedelta(seconds=cfg.aggregation_window_s),
        minimum_total=cfg.aggregation_min_total_usd,
    )
    return TradeExecutor(
        tracked_addresses=cfg.tracked_addresses,
        store=store,
        pipeline=pipeline,
        buffer=buffer,
        evaluator=evaluator,
        aggregation_enabled=cfg.aggregation_enabled,
        loop_delay_s=cfg.loop_delay_ms / 1000.0,
        idle_heartbeat_s=cfg.idle_heartbeat_ms / 1000.0,
        stop_token=stop_token,
        dry_run=cfg.dry_run,
    )


async def _amain(cfg: ExecutorConfig) -> int:
    store = FirestoreTradeStore(project_id=cfg.firestore_project_id, timeout_s=cfg.remote_call_timeout_s)
    stop_token = StopToken()
    install_signal_handlers(stop_token)

    async with httpx.AsyncClient(timeout=cfg.remote_call_timeout_s) as http:
        try:
            executor = build_executor(cfg, store=store, http=http, stop_token=stop_token)
        except ConfigError as e:
            log_event(logger, "executor.config_failed", severity="CRITICAL", error=str(e))
            return 2
        try:
            await executor.run()
        except Exception as e:
            log_event(logger, "executor.shutdown", severity="ERROR", status="error", error=str(e))
            return 2
    return 0


def main() -> None:
    cfg = validate_or_exit()
    init_structured_logging(service="copytrader-executor")
    raise SystemExit(asyncio.run(_amain(cfg)))


if __name__ == "__main__":
    main()
