"""Helpers for canonical JSON serialization of ledger rows and broadcast payloads."""

from __future__ import annotations

from decimal import Decimal
from typing import Any

import orjson

_ORJSON_OPTIONS = orjson.OPT_SORT_KEYS | orjson.OPT_NAIVE_UTC | orjson.OPT_UTC_Z


def _default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    raise TypeError(f"type {type(value).__name__} is not JSON serializable")


def canonical_dumps(payload: Any) -> bytes:
    """Return canonical JSON bytes with sorted keys; Decimals become strings."""
    return orjson.dumps(payload, default=_default, option=_ORJSON_OPTIONS)


def canonical_loads(raw: bytes | bytearray | str) -> Any:
    return orjson.loads(raw)
