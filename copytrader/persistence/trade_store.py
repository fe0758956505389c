"""
Trade record store.

Storage (written by the ingestion service, updated here):
  tracked_wallets/{address}/activity/{trade_id}

Ingestion writes every record with `filtered=False` and `executed_at_ms=0`; this
worker only ever flips those two fields. A record is "unprocessed" while
`type == "TRADE"`, `filtered == False` and `executed_at_ms == 0`.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Protocol, TypeVar

from copytrader.aggregation.models import TradeEvent
from copytrader.common.errors import RemoteCallError, TradeEventError
from copytrader.persistence.firebase_client import get_firestore_client
from copytrader.persistence.firestore_retry import with_firestore_retry

T = TypeVar("T")
logger = logging.getLogger(__name__)

WALLETS_COLLECTION = "tracked_wallets"
ACTIVITY_COLLECTION = "activity"


class TradeStore(Protocol):
    async def find_unprocessed(self, address: str) -> list[TradeEvent]:
        ...

    async def mark_filtered(self, address: str, trade_id: str) -> None:
        ...

    async def mark_executed(self, address: str, trade_id: str, executed_at_ms: int) -> None:
        ...


class FirestoreTradeStore:
    """
    Firestore-backed TradeStore.

    The Firestore SDK is blocking; every call runs on a worker thread and is bounded
    by `timeout_s`. Failures surface as RemoteCallError.
    """

    def __init__(self, *, db: Any | None = None, project_id: str | None = None, timeout_s: float = 15.0) -> None:
        self._db = db if db is not None else get_firestore_client(project_id=project_id)
        self._timeout_s = float(timeout_s)
        self.parse_errors = 0

    def _activity(self, address: str):
        return self._db.collection(WALLETS_COLLECTION).document(str(address)).collection(ACTIVITY_COLLECTION)

    async def _call(self, operation: str, fn: Callable[[], T]) -> T:
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn), timeout=self._timeout_s)
        except Exception as e:
            raise RemoteCallError(operation, e) from e

    def _query_unprocessed(self, address: str) -> list[tuple[str, dict[str, Any]]]:
        q = (
            self._activity(address)
            .where("type", "==", "TRADE")
            .where("filtered", "==", False)
            .where("executed_at_ms", "==", 0)
        )
        return [(snap.id, snap.to_dict() or {}) for snap in q.stream()]

    async def find_unprocessed(self, address: str) -> list[TradeEvent]:
        rows = await self._call(
            f"trade_store.find_unprocessed[{address}]",
            lambda: with_firestore_retry(lambda: self._query_unprocessed(address)),
        )

        events: list[TradeEvent] = []
        for doc_id, data in rows:
            try:
                events.append(TradeEvent.from_document(doc_id, data, user_address=address))
            except TradeEventError as e:
                self.parse_errors += 1
                logger.warning(
                    "skipping malformed trade record: %s",
                    e,
                    extra={"event_type": "trade_store.parse_error", "trade_id": doc_id, "user_address": address},
                )
        return events

    async def mark_filtered(self, address: str, trade_id: str) -> None:
        ref = self._activity(address).document(str(trade_id))
        await self._call(
            f"trade_store.mark_filtered[{trade_id}]",
            lambda: with_firestore_retry(lambda: ref.update({"filtered": True})),
        )

    async def mark_executed(self, address: str, trade_id: str, executed_at_ms: int) -> None:
        ref = self._activity(address).document(str(trade_id))
        await self._call(
            f"trade_store.mark_executed[{trade_id}]",
            lambda: with_firestore_retry(lambda: ref.update({"executed_at_ms": int(executed_at_ms)})),
        )
