from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any

import pytest
from google.api_core import exceptions as gexc

from copytrader.common.errors import RemoteCallError
from copytrader.persistence import firestore_retry
from copytrader.persistence.trade_store import FirestoreTradeStore

ADDR = "0x" + "c" * 40


class _FakeSnap:
    def __init__(self, doc_id: str, data: dict[str, Any]):
        self.id = doc_id
        self._data = dict(data)

    def to_dict(self) -> dict[str, Any]:
        return dict(self._data)


@dataclass
class _FakeQuery:
    store: dict[str, dict[str, Any]]
    path: str
    filters: tuple[tuple[str, str, Any], ...] = ()

    def where(self, field: str, op: str, value: Any) -> "_FakeQuery":
        assert op == "=="
        return _FakeQuery(store=self.store, path=self.path, filters=self.filters + ((field, op, value),))

    def stream(self):
        prefix = self.path + "/"
        for p, data in self.store.items():
            rest = p[len(prefix):] if p.startswith(prefix) else None
            if not rest or "/" in rest:
                continue
            # Firestore equality filters never match a missing field.
            if all(f in data and data[f] == v for f, _, v in self.filters):
                yield _FakeSnap(rest, data)


@dataclass
class _FakeDocRef:
    store: dict[str, dict[str, Any]]
    path: str

    def collection(self, name: str) -> "_FakeCollection":
        return _FakeCollection(store=self.store, path=f"{self.path}/{name}")

    def update(self, data: dict[str, Any]) -> None:
        if self.path not in self.store:
            raise gexc.NotFound(f"no document: {self.path}")
        merged = dict(self.store[self.path])
        merged.update(dict(data))
        self.store[self.path] = merged


@dataclass
class _FakeCollection(_FakeQuery):
    def document(self, doc_id: str) -> _FakeDocRef:
        return _FakeDocRef(store=self.store, path=f"{self.path}/{doc_id}")


class _FakeFirestore:
    def __init__(self):
        self._store: dict[str, dict[str, Any]] = {}

    def collection(self, name: str) -> _FakeCollection:
        return _FakeCollection(store=self._store, path=name)

    def put(self, address: str, doc_id: str, data: dict[str, Any]) -> None:
        self._store[f"tracked_wallets/{address}/activity/{doc_id}"] = dict(data)


def _trade(**overrides) -> dict[str, Any]:
    d = {
        "type": "TRADE",
        "conditionId": "cond",
        "asset": "tok",
        "side": "BUY",
        "usdcSize": 12.0,
        "price": 0.4,
        "filtered": False,
        "executed_at_ms": 0,
    }
    d.update(overrides)
    return d


def test_find_unprocessed_applies_type_filtered_and_executed_filters():
    fake = _FakeFirestore()
    fake.put(ADDR, "ok", _trade())
    fake.put(ADDR, "redeem", _trade(type="REDEEM"))
    fake.put(ADDR, "filtered", _trade(filtered=True))
    fake.put(ADDR, "done", _trade(executed_at_ms=1_700_000_000_000))
    fake.put("0x" + "d" * 40, "other-wallet", _trade())

    store = FirestoreTradeStore(db=fake)
    events = asyncio.run(store.find_unprocessed(ADDR))

    assert [e.id for e in events] == ["ok"]
    assert events[0].user_address == ADDR
    assert events[0].usdc_size == 12.0


def test_malformed_records_are_skipped_with_warning(caplog):
    fake = _FakeFirestore()
    fake.put(ADDR, "good", _trade())
    fake.put(ADDR, "bad", _trade(price="n/a"))

    store = FirestoreTradeStore(db=fake)
    with caplog.at_level("WARNING"):
        events = asyncio.run(store.find_unprocessed(ADDR))

    assert [e.id for e in events] == ["good"]
    assert store.parse_errors == 1
    assert any(getattr(r, "event_type", None) == "trade_store.parse_error" for r in caplog.records)


def test_mark_filtered_and_executed_remove_records_from_unprocessed():
    fake = _FakeFirestore()
    fake.put(ADDR, "a", _trade())
    fake.put(ADDR, "b", _trade())
    store = FirestoreTradeStore(db=fake)

    async def _go():
        await store.mark_filtered(ADDR, "a")
        await store.mark_filtered(ADDR, "a")
        await store.mark_executed(ADDR, "b", 1_700_000_000_123)
        return await store.find_unprocessed(ADDR)

    assert asyncio.run(_go()) == []
    doc_a = fake._store[f"tracked_wallets/{ADDR}/activity/a"]
    doc_b = fake._store[f"tracked_wallets/{ADDR}/activity/b"]
    assert doc_a["filtered"] is True
    assert doc_a["executed_at_ms"] == 0
    assert doc_b["executed_at_ms"] == 1_700_000_000_123
    assert doc_b["filtered"] is False


def test_store_failures_surface_as_remote_call_error():
    store = FirestoreTradeStore(db=_FakeFirestore())
    with pytest.raises(RemoteCallError) as ei:
        asyncio.run(store.mark_executed(ADDR, "missing", 1))
    assert isinstance(ei.value.cause, gexc.NotFound)
    assert "mark_executed" in ei.value.operation


def test_with_firestore_retry_retries_transient_errors_only():
    sleeps: list[float] = []
    calls = {"n": 0}

    def flaky():
        calls["n"] += 1
        if calls["n"] < 3:
            raise gexc.ServiceUnavailable("try again")
        return "ok"

    assert firestore_retry.with_firestore_retry(flaky, sleep=sleeps.append) == "ok"
    assert calls["n"] == 3
    assert len(sleeps) == 2

    def broken():
        raise gexc.PermissionDenied("nope")

    with pytest.raises(gexc.PermissionDenied):
        firestore_retry.with_firestore_retry(broken, sleep=sleeps.append)
    assert len(sleeps) == 2


def test_with_firestore_retry_gives_up_after_max_attempts():
    calls = {"n": 0}

    def always_down():
        calls["n"] += 1
        raise gexc.DeadlineExceeded("slow")

    with pytest.raises(gexc.DeadlineExceeded):
        firestore_retry.with_firestore_retry(always_down, max_attempts=4, sleep=lambda s: None)
    assert calls["n"] == 4
