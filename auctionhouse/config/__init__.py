"""Configuration helpers for the auction service."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

_DEFAULT_SERVER_CONFIG = Path(__file__).resolve().parent / "server.yaml"


@dataclass(frozen=True)
class LedgerConfig:
    backend: str
    options: Mapping[str, Any]


@dataclass(frozen=True)
class BiddingConfig:
    lock_timeout_ms: int
    max_commit_attempts: int
    allow_self_outbid: bool


@dataclass(frozen=True)
class LifecycleConfig:
    ending_soon_minutes: int
    cron_token: Optional[str]


@dataclass(frozen=True)
class BroadcastConfig:
    backend: str
    options: Mapping[str, Any]


@dataclass(frozen=True)
class ServerConfig:
    listen: Mapping[str, Any]
    ledger: LedgerConfig
    bidding: BiddingConfig
    lifecycle: LifecycleConfig
    broadcast: BroadcastConfig


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(path)
    return yaml.safe_load(path.read_text()) or {}


def parse_server_config(data: Mapping[str, Any]) -> ServerConfig:
    ledger = data.get("ledger", {})
    bidding = data.get("bidding", {})
    lifecycle = data.get("lifecycle", {})
    broadcast = data.get("broadcast", {})
    cron_token = os.getenv("AUCTIONHOUSE_CRON_TOKEN") or lifecycle.get("cron_token")
    max_attempts = int(bidding.get("max_commit_attempts", 3))
    if max_attempts < 1:
        raise ValueError("bidding.max_commit_attempts must be at least 1")
    return ServerConfig(
        listen=data.get("listen", {}),
        ledger=LedgerConfig(
            backend=str(ledger.get("backend", "in_memory")),
            options=dict(ledger.get("options") or {}),
        ),
        bidding=BiddingConfig(
            lock_timeout_ms=int(bidding.get("lock_timeout_ms", 2000)),
            max_commit_attempts=max_attempts,
            allow_self_outbid=bool(bidding.get("allow_self_outbid", False)),
        ),
        lifecycle=LifecycleConfig(
            ending_soon_minutes=int(lifecycle.get("ending_soon_minutes", 60)),
            cron_token=str(cron_token) if cron_token else None,
        ),
        broadcast=BroadcastConfig(
            backend=str(broadcast.get("backend", "local")),
            options=dict(broadcast.get("options") or {}),
        ),
    )


@lru_cache(maxsize=1)
def get_server_config() -> ServerConfig:
    path = Path(os.getenv("AUCTIONHOUSE_CONFIG_PATH", _DEFAULT_SERVER_CONFIG))
    return parse_server_config(_load_yaml(path))
