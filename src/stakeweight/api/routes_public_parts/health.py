from __future__ import annotations

import time
from typing import Any, Dict

from fastapi import APIRouter, Request

router = APIRouter()

Json = Dict[str, Any]


@router.get("/health")
def health(request: Request) -> Json:
    ex = getattr(request.app.state, "executor", None)
    return {
        "ok": True,
        "service": "stakeweight",
        "executor_ready": ex is not None,
        "ts_ms": int(time.time() * 1000),
    }
