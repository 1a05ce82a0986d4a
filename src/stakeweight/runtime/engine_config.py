# src/stakeweight/runtime/engine_config.py
from __future__ import annotations

import json
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Optional

Json = Dict[str, Any]


def _as_int(v: Any, default: int) -> int:
    try:
        return int(v)
    except (TypeError, ValueError):
        return int(default)


def _as_str(v: Any, default: str) -> str:
    if v is None:
        return str(default)
    s = str(v)
    return s if s.strip() else str(default)


@dataclass(frozen=True)
class EngineConfig:
    mode: str  # "dev" | "testnet" | "prod"

    # SQLite file for pool and stake records; ":memory:" keeps records in-process.
    db_path: str

    api_host: str
    api_port: int

    log_level: str

    # Suggested tau for tooling that creates pools without an explicit value.
    default_tau_seconds: int


_ALLOWED_MODES = {"dev", "testnet", "prod"}
_ALLOWED_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def validate_engine_config(cfg: EngineConfig) -> None:
    """Fail-fast validation for operator config."""

    mode = str(cfg.mode or "").strip().lower()
    if mode not in _ALLOWED_MODES:
        raise ValueError(f"mode must be one of {_ALLOWED_MODES}; got: {cfg.mode!r}")

    if not isinstance(cfg.db_path, str) or not cfg.db_path.strip():
        raise ValueError("db_path must be a non-empty string")
    if mode == "prod" and cfg.db_path == ":memory:":
        raise ValueError("db_path ':memory:' is not allowed in prod mode")

    if int(cfg.api_port) <= 0 or int(cfg.api_port) > 65535:
        raise ValueError(f"api_port must be 1..65535; got: {cfg.api_port}")

    if str(cfg.log_level).strip().upper() not in _ALLOWED_LOG_LEVELS:
        raise ValueError(f"log_level must be one of {_ALLOWED_LOG_LEVELS}; got: {cfg.log_level!r}")

    if int(cfg.default_tau_seconds) <= 0:
        raise ValueError(f"default_tau_seconds must be > 0; got: {cfg.default_tau_seconds}")


def default_engine_config() -> EngineConfig:
    return EngineConfig(
        # Production-safe default: durable storage, no docs endpoints.
        mode="prod",
        db_path="./data/stakeweight.db",
        api_host="127.0.0.1",
        api_port=8080,
        log_level="INFO",
        default_tau_seconds=86_400,
    )


def _apply_mapping(base: EngineConfig, raw: Json) -> EngineConfig:
    return EngineConfig(
        mode=_as_str(raw.get("mode"), base.mode).strip().lower(),
        db_path=_as_str(raw.get("db_path"), base.db_path),
        api_host=_as_str(raw.get("api_host"), base.api_host),
        api_port=_as_int(raw.get("api_port"), base.api_port),
        log_level=_as_str(raw.get("log_level"), base.log_level).strip().upper(),
        default_tau_seconds=_as_int(raw.get("default_tau_seconds"), base.default_tau_seconds),
    )


def read_engine_config_file(path: str, *, base: Optional[EngineConfig] = None) -> EngineConfig:
    p = Path(path)
    raw = json.loads(p.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise ValueError("engine config must be a JSON object")
    return _apply_mapping(base or default_engine_config(), raw)


def _env_overrides() -> Json:
    out: Json = {}
    for key in ("mode", "db_path", "api_host", "api_port", "log_level", "default_tau_seconds"):
        v = os.environ.get(f"STAKEWEIGHT_{key.upper()}")
        if v is not None and str(v).strip():
            out[key] = v.strip()
    return out


def load_engine_config(*, config_path: Optional[str] = None) -> EngineConfig:
    """Defaults, then an optional JSON file, then STAKEWEIGHT_* environment variables."""
    cfg = default_engine_config()
    p = config_path or os.environ.get("STAKEWEIGHT_CONFIG_PATH")
    if p:
        cfg = read_engine_config_file(p, base=cfg)
    cfg = _apply_mapping(cfg, _env_overrides())
    validate_engine_config(cfg)
    return cfg


def with_overrides(cfg: EngineConfig, **changes: Any) -> EngineConfig:
    out = replace(cfg, **changes)
    validate_engine_config(out)
    return out
