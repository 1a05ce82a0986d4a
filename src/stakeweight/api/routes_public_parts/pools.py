from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Request

from stakeweight.api.errors import ApiError
from stakeweight.api.routes_public_parts.common import _clean_id, _executor

router = APIRouter()

Json = Dict[str, Any]


@router.get("/pools/{pool_id}")
def get_pool(pool_id: str, request: Request) -> Json:
    """Pool record plus live total weight at the host's current time."""
    ex = _executor(request)
    view = ex.pool_view(_clean_id(pool_id, "pool_id"))
    if view is None:
        raise ApiError.not_found("not_found", "pool_not_found", {"pool_id": pool_id})
    return {"ok": True, **view}


@router.get("/pools/{pool_id}/stakes/{owner}")
def get_stake(pool_id: str, owner: str, request: Request) -> Json:
    """Stake record plus live weight and pending reward (WAD-scaled and whole units)."""
    ex = _executor(request)
    view = ex.stake_view(_clean_id(pool_id, "pool_id"), _clean_id(owner, "owner"))
    if view is None:
        raise ApiError.not_found("not_found", "stake_not_found", {"pool_id": pool_id, "owner": owner})
    return {"ok": True, **view}
