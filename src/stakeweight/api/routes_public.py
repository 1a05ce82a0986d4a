# src/stakeweight/api/routes_public.py
from __future__ import annotations

from fastapi import APIRouter

from stakeweight.api.routes_public_parts.health import router as health_router
from stakeweight.api.routes_public_parts.instructions import router as instructions_router
from stakeweight.api.routes_public_parts.pools import router as pools_router

public_router = APIRouter()

# Versioned API surface
public_router.include_router(health_router, prefix="/v1", tags=["health"])
public_router.include_router(pools_router, prefix="/v1", tags=["pools"])
public_router.include_router(instructions_router, prefix="/v1", tags=["instructions"])
