from __future__ import annotations

from typing import Optional

from fastapi import FastAPI, Request

from stakeweight.api.errors import ApiError
from stakeweight.api.routes_public import public_router
from stakeweight.api.routes_public_parts.common import api_error_response
from stakeweight.api.structured_logging import RequestLogMiddleware
from stakeweight.runtime.engine_config import EngineConfig, load_engine_config
from stakeweight.runtime.executor import StakingExecutor, build_executor as _build_executor
from stakeweight.runtime.structured_log import configure_structured_logging


def build_executor(cfg: EngineConfig) -> StakingExecutor:
    """Build the executor for API runtime.

    This wrapper exists so tests can monkeypatch `stakeweight.api.app.build_executor`
    without reaching into runtime modules.
    """
    return _build_executor(cfg)


def create_app(
    *,
    cfg: Optional[EngineConfig] = None,
    executor: Optional[StakingExecutor] = None,
    boot_runtime: bool = True,
) -> FastAPI:
    """Create the FastAPI application.

    executor: attach an existing executor (tests, embedding).
    boot_runtime:
      - True (default): load config and build an executor when none is given
      - False: no executor; endpoints other than /v1/health answer 500 not_ready
    """
    configure_structured_logging()

    if cfg is None and (executor is None and boot_runtime):
        cfg = load_engine_config()

    mode = (cfg.mode if cfg is not None else "dev").strip().lower()

    # Disable docs in production.
    if mode == "prod":
        app = FastAPI(title="stakeweight API", docs_url=None, redoc_url=None, openapi_url=None)
    else:
        app = FastAPI(title="stakeweight API")

    app.state.cfg = cfg
    if executor is not None:
        app.state.executor = executor
    elif boot_runtime and cfg is not None:
        app.state.executor = build_executor(cfg)
    else:
        app.state.executor = None

    @app.exception_handler(ApiError)
    async def _api_error_handler(request: Request, exc: ApiError):
        return api_error_response(exc)

    app.add_middleware(RequestLogMiddleware)
    app.include_router(public_router)

    return app
