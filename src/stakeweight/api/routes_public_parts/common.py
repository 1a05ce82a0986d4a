from __future__ import annotations

from typing import Any, Dict

from fastapi import Request
from fastapi.responses import JSONResponse

from stakeweight.api.errors import ApiError

Json = Dict[str, Any]


def _executor(request: Request):
    ex = getattr(request.app.state, "executor", None)
    if ex is None:
        raise ApiError.internal("not_ready", "executor not attached to app.state", {})
    return ex


def _clean_id(v: Any, field: str) -> str:
    s = str(v or "").strip()
    if not s:
        raise ApiError.bad_request("invalid_payload", f"missing_{field}", {})
    if len(s) > 256:
        raise ApiError.bad_request("invalid_payload", f"{field}_too_long", {"max": 256})
    return s


def api_error_response(err: ApiError) -> JSONResponse:
    return JSONResponse(status_code=err.status_code, content=err.to_json())
