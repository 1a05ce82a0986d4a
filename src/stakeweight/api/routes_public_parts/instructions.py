from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Request

from stakeweight.api.errors import ApiError
from stakeweight.api.routes_public_parts.common import _executor

router = APIRouter()

Json = Dict[str, Any]


@router.post("/instructions")
async def submit_instruction(request: Request) -> Json:
    """Apply one instruction envelope.

    Body: { instruction, signer, pool_id, payload }

    Returns the outcome with the transfers that were executed. Rejections
    map to 400/403/404 with the rejection code and reason.
    """
    ex = _executor(request)
    try:
        body = await request.json()
    except ValueError:
        raise ApiError.bad_request("invalid_payload", "body_not_json", {})
    if not isinstance(body, dict):
        raise ApiError.bad_request("invalid_payload", "body_must_be_object", {})

    outcome = ex.submit(body)
    if not outcome.ok:
        raise ApiError.from_apply_error(outcome.code, outcome.reason, outcome.details)
    return outcome.to_json()
