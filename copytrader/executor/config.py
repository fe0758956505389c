from __future__ import annotations

import json
import math
import os
import re
import sys
from datetime import datetime, timezone
from typing import Any, List, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from copytrader.common.errors import ConfigError
from copytrader.marketdata.balance import DEFAULT_USDC_CONTRACT
from copytrader.marketdata.positions import DEFAULT_DATA_API_URL

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
_TRUTHY = ("1", "true", "t", "yes", "y", "on")
_FALSY = ("0", "false", "f", "no", "n", "off", "")


def _check_address(value: str) -> str:
    s = str(value or "").strip()
    if not _ADDRESS_RE.match(s):
        raise ValueError(f"invalid wallet address: {value!r}")
    return s


class ExecutorConfig(BaseModel):
    tracked_addresses: List[str] = Field(..., min_length=1)
    own_address: str

    aggregation_enabled: bool = False
    aggregation_window_s: float = Field(default=300.0, ge=0)
    aggregation_min_total_usd: float = Field(default=1.0, ge=0)

    loop_delay_ms: int = Field(default=300, ge=0)
    idle_heartbeat_ms: int = Field(default=60_000, gt=0)
    remote_call_timeout_s: float = Field(default=15.0, gt=0)

    dry_run: bool = False

    firestore_project_id: Optional[str] = None
    data_api_url: str = DEFAULT_DATA_API_URL
    rpc_url: str = Field(..., min_length=1)
    usdc_contract_address: str = DEFAULT_USDC_CONTRACT
    order_service_url: Optional[str] = None
    order_service_api_key_required: bool = False

    @field_validator("tracked_addresses")
    @classmethod
    def _validate_tracked(cls, v: List[str]) -> List[str]:
        out: list[str] = []
        for a in v:
            checked = _check_address(a)
            if checked not in out:
                out.append(checked)
        return out

    @field_validator("own_address", "usdc_contract_address")
    @classmethod
    def _validate_address(cls, v: str) -> str:
        return _check_address(v)

    @model_validator(mode="after")
    def _require_order_service(self) -> "ExecutorConfig":
        if not self.dry_run and not (self.order_service_url or "").strip():
            raise ValueError("ORDER_SERVICE_URL is required unless DRY_RUN=1")
        return self

    def summary(self) -> dict[str, Any]:
        return {
            "tracked_addresses": list(self.tracked_addresses),
            "tracked_count": len(self.tracked_addresses),
            "own_address": self.own_address,
            "aggregation_enabled": self.aggregation_enabled,
            "aggregation_window_s": self.aggregation_window_s,
            "aggregation_min_total_usd": self.aggregation_min_total_usd,
            "loop_delay_ms": self.loop_delay_ms,
            "idle_heartbeat_ms": self.idle_heartbeat_ms,
            "dry_run": self.dry_run,
        }


def _get(env: Mapping[str, str], name: str) -> Optional[str]:
    v = env.get(name)
    if v is None:
        return None
    s = str(v).strip()
    return s or None


def _env_bool(env: Mapping[str, str], name: str, *, default: bool = False) -> bool:
    v = env.get(name)
    if v is None:
        return default
    s = v.strip().lower()
    if s in _TRUTHY:
        return True
    if s in _FALSY:
        return False
    raise ConfigError(f"{name} must be a boolean, got {v!r}")


def _env_number(env: Mapping[str, str], name: str, default: str, cast: type) -> Any:
    raw = _get(env, name) or default
    try:
        value = float(raw)
        if not math.isfinite(value):
            raise ValueError("not finite")
        return cast(value)
    except (ValueError, OverflowError) as e:
        raise ConfigError(f"{name} must be a finite number, got {raw!r}") from e


def parse_addresses(raw: str | None) -> list[str]:
    """
    Accepts a comma-separated list or a JSON array.
    """
    s = (raw or "").strip()
    if not s:
        return []
    if s.startswith("["):
        try:
            decoded = json.loads(s)
        except json.JSONDecodeError as e:
            raise ConfigError(f"USER_ADDRESSES is not valid JSON: {e}") from e
        if not isinstance(decoded, list):
            raise ConfigError("USER_ADDRESSES JSON must be an array")
        return [str(a).strip() for a in decoded if str(a).strip()]
    return [a.strip() for a in s.split(",") if a.strip()]


def load_config_from_env(env: Mapping[str, str] | None = None) -> ExecutorConfig:
    e: Mapping[str, str] = os.environ if env is None else env

    raw: dict[str, Any] = {
        "tracked_addresses": parse_addresses(e.get("USER_ADDRESSES")),
        "own_address": _get(e, "PROXY_WALLET") or "",
        "aggregation_enabled": _env_bool(e, "TRADE_AGGREGATION_ENABLED", default=False),
        "aggregation_window_s": _env_number(e, "TRADE_AGGREGATION_WINDOW_SECONDS", "300", float),
        "aggregation_min_total_usd": _env_number(e, "TRADE_AGGREGATION_MIN_TOTAL_USD", "1.0", float),
        "loop_delay_ms": _env_number(e, "EXECUTOR_LOOP_DELAY_MS", "300", int),
        "idle_heartbeat_ms": _env_number(e, "EXECUTOR_IDLE_HEARTBEAT_MS", "60000", int),
        "remote_call_timeout_s": _env_number(e, "REMOTE_CALL_TIMEOUT_S", "15", float),
        "dry_run": _env_bool(e, "DRY_RUN", default=False),
        "firestore_project_id": (
            _get(e, "FIREBASE_PROJECT_ID") or _get(e, "FIRESTORE_PROJECT_ID") or _get(e, "GOOGLE_CLOUD_PROJECT")
        ),
        "data_api_url": _get(e, "POLYMARKET_DATA_API_URL") or DEFAULT_DATA_API_URL,
        "rpc_url": _get(e, "RPC_URL") or "",
        "usdc_contract_address": _get(e, "USDC_CONTRACT_ADDRESS") or DEFAULT_USDC_CONTRACT,
        "order_service_url": _get(e, "ORDER_SERVICE_URL"),
        "order_service_api_key_required": _env_bool(e, "ORDER_SERVICE_API_KEY_REQUIRED", default=False),
    }

    try:
        return ExecutorConfig(**raw)
    except ValidationError as ve:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err.get('loc', ())) or 'config'}: {err.get('msg')}" for err in ve.errors()
        )
        raise ConfigError(f"invalid executor configuration: {problems}") from ve


def validate_or_exit(env: Mapping[str, str] | None = None) -> ExecutorConfig:
    """
    Load config or exit the process.

    On failure:
    - prints a single line that begins with "CONFIG_FAIL" to stderr
    - exits with code 2
    """
    try:
        return load_config_from_env(env)
    except ConfigError as e:
        payload = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "service": "copytrader-executor",
            "error": str(e),
        }
        sys.stderr.write("CONFIG_FAIL " + json.dumps(payload, separators=(",", ":"), ensure_ascii=False) + "\n")
        sys.stderr.flush()
        raise SystemExit(2)
