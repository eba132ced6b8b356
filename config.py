# config.py
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields, replace
from datetime import timedelta
from typing import List

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SchedulerConfig:
    """Runtime configuration, built once and passed to every component.

    Environment:
    - SCHEDCTL_DB_PATH: SQLite job store path (default: schedules.db)
    - SCHEDCTL_RPC_URL: ledger JSON-RPC endpoint
    - SCHEDCTL_CHAIN_ID: chain id used when signing (default: 1)
    - SCHEDCTL_EXPLORER_URL: block explorer base for tx links
    - SCHEDCTL_PRICE_API_URL / SCHEDCTL_PRICE_API_KEY: spot price service
    - SCHEDCTL_POLL_INTERVAL: executor idle sleep, seconds (default: 30)
    - SCHEDCTL_DUE_TOLERANCE_SECONDS: claim lead ahead of due time (default: 300)
    - SCHEDCTL_CONFIRMATION_TIMEOUT: receipt wait, seconds (default: 180)
    - SCHEDCTL_FEE_HEADROOM_PCT: max fee headroom over base fee (default: 25)
    - SCHEDCTL_PRIORITY_FEE_GWEI: priority fee when the node has no suggestion (default: 2)
    - SCHEDCTL_MAX_JOBS_PER_TICK: due jobs fetched per cycle (default: 20)

    Keys in the store's config table override the environment; CLI flags
    override both.
    """

    db_path: str = "schedules.db"
    rpc_url: str = ""
    chain_id: int = 1
    explorer_url: str = "https://etherscan.io"
    price_api_url: str = "https://api.coingecko.com/api/v3"
    price_api_key: str = ""
    native_price_id: str = "ethereum"
    poll_interval: float = 30.0
    due_tolerance_seconds: int = 300
    confirmation_timeout: float = 180.0
    fee_headroom_pct: int = 25
    priority_fee_gwei: float = 2.0
    max_jobs_per_tick: int = 20
    reconcile_attempts: int = 3
    reconcile_backoff: float = 1.0
    stuck_after_seconds: int = 300

    @property
    def due_tolerance(self) -> timedelta:
        return timedelta(seconds=self.due_tolerance_seconds)

    @classmethod
    def from_env(cls) -> "SchedulerConfig":
        return cls(
            db_path=_env_str("SCHEDCTL_DB_PATH", cls.db_path),
            rpc_url=_env_str("SCHEDCTL_RPC_URL", ""),
            chain_id=_env_int("SCHEDCTL_CHAIN_ID", cls.chain_id),
            explorer_url=_env_str("SCHEDCTL_EXPLORER_URL", cls.explorer_url),
            price_api_url=_env_str("SCHEDCTL_PRICE_API_URL", cls.price_api_url),
            price_api_key=_env_str("SCHEDCTL_PRICE_API_KEY", ""),
            native_price_id=_env_str("SCHEDCTL_NATIVE_PRICE_ID", cls.native_price_id),
            poll_interval=max(0.1, _env_float("SCHEDCTL_POLL_INTERVAL", cls.poll_interval)),
            due_tolerance_seconds=max(0, _env_int("SCHEDCTL_DUE_TOLERANCE_SECONDS", cls.due_tolerance_seconds)),
            confirmation_timeout=max(1.0, _env_float("SCHEDCTL_CONFIRMATION_TIMEOUT", cls.confirmation_timeout)),
            fee_headroom_pct=max(0, _env_int("SCHEDCTL_FEE_HEADROOM_PCT", cls.fee_headroom_pct)),
            priority_fee_gwei=max(0.0, _env_float("SCHEDCTL_PRIORITY_FEE_GWEI", cls.priority_fee_gwei)),
            max_jobs_per_tick=max(1, _env_int("SCHEDCTL_MAX_JOBS_PER_TICK", cls.max_jobs_per_tick)),
        )

    def with_overrides(self, storage, **explicit) -> "SchedulerConfig":
        """Layer store config keys, then explicit (non-None) values, on top of self."""
        changes = {}
        for f in fields(self):
            raw = storage.get_config(f.name) if storage is not None else None
            if raw is None:
                continue
            try:
                changes[f.name] = _coerce(raw, type(getattr(self, f.name)))
            except ValueError:
                logger.warning("Ignoring stored config %s=%r: not a valid %s",
                               f.name, raw, type(getattr(self, f.name)).__name__)
        for name, value in explicit.items():
            if value is not None:
                changes[name] = value
        return replace(self, **changes) if changes else self


def _coerce(raw: str, kind: type):
    if kind is bool:
        return str(raw).strip().lower() in {"1", "true", "yes", "y", "on"}
    return kind(str(raw).strip())


def _env_str(name: str, default: str) -> str:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip()


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return int(default)
    try:
        return int(str(raw).strip())
    except ValueError:
        return int(default)


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None:
        return float(default)
    try:
        return float(str(raw).strip())
    except ValueError:
        return float(default)


def config_keys() -> List[str]:
    return [f.name for f in fields(SchedulerConfig)]


def parse_value(key: str, raw: str):
    """Coerce raw to the type of config key. Raises KeyError or ValueError."""
    defaults = SchedulerConfig()
    if key not in config_keys():
        raise KeyError(key)
    return _coerce(raw, type(getattr(defaults, key)))
