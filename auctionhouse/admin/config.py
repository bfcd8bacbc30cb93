"""Expose currently loaded server config for debugging."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from ..config import ServerConfig

router = APIRouter(prefix="/admin", tags=["admin"])


def _get_config(request: Request) -> ServerConfig:
    return request.app.state.server_config


@router.get("/config")
async def config(
    request: Request,
    config: ServerConfig = Depends(_get_config),
) -> dict:
    # Connection options can carry credentials, so only backend names are shown.
    return {
        "version": request.app.version,
        "storage_backend": config.ledger.backend,
        "broadcast_backend": config.broadcast.backend,
        "bidding": {
            "lock_timeout_ms": config.bidding.lock_timeout_ms,
            "max_commit_attempts": config.bidding.max_commit_attempts,
            "allow_self_outbid": config.bidding.allow_self_outbid,
        },
        "lifecycle": {
            "ending_soon_minutes": config.lifecycle.ending_soon_minutes,
            "cron_protected": config.lifecycle.cron_token is not None,
        },
    }
