from __future__ import annotations

from typing import Any, Dict, Tuple

import pytest
from fastapi.testclient import TestClient

from stakeweight.runtime.executor import StakingExecutor
from stakeweight.runtime.host import MemoryHost
from stakeweight.runtime.tx_admission_types import ASSET, REWARD

Json = Dict[str, Any]

TAU = 86_400
T0 = 1_700_000_000


def _ix(instruction: str, signer: str, **payload: Any) -> Json:
    return {"instruction": instruction, "signer": signer, "pool_id": "p", "payload": payload}


@pytest.fixture()
def client() -> Tuple[TestClient, MemoryHost]:
    from stakeweight.api.app import create_app

    host = MemoryHost(now=T0)
    host.credit(ASSET, "alice", 1_000)
    host.credit(REWARD, "treasury", 5_000)
    app = create_app(executor=StakingExecutor.in_memory(host=host))
    return TestClient(app), host


def test_create_app_boot_runtime_false_does_not_attach_executor() -> None:
    from stakeweight.api.app import create_app

    app = create_app(boot_runtime=False)
    assert getattr(app.state, "executor", None) is None
    with TestClient(app) as c:
        r = c.get("/v1/health")
        assert r.status_code == 200
        assert r.json()["executor_ready"] is False

        r = c.get("/v1/pools/p")
        assert r.status_code == 500
        assert r.json()["error"]["code"] == "not_ready"


def test_create_app_boots_executor_from_config(monkeypatch: pytest.MonkeyPatch) -> None:
    import stakeweight.api.app as app_mod

    built = []

    def fake_build_executor(cfg):
        built.append(cfg)
        return StakingExecutor.in_memory(host=MemoryHost(now=T0))

    monkeypatch.setattr(app_mod, "build_executor", fake_build_executor)
    monkeypatch.setenv("STAKEWEIGHT_MODE", "dev")
    monkeypatch.setenv("STAKEWEIGHT_DB_PATH", ":memory:")

    app = app_mod.create_app()
    assert len(built) == 1
    assert built[0].mode == "dev"
    assert app.state.executor is not None


def test_instruction_round_trip(client) -> None:
    c, host = client

    r = c.post("/v1/instructions", json=_ix("INITIALIZE_POOL", "admin", tau_seconds=TAU))
    assert r.status_code == 200
    assert r.json()["ok"] is True

    r = c.post("/v1/instructions", json=_ix("STAKE", "alice", amount=1_000))
    body = r.json()
    assert r.status_code == 200
    assert body["result"]["amount"] == 1_000
    assert body["transfers"] == [
        {"currency": "asset", "src": "alice", "dst": "pool:p:vault", "amount": 1_000},
    ]

    host.advance(100 * TAU)
    assert c.post("/v1/instructions", json=_ix("DEPOSIT_REWARDS", "treasury", amount=5_000)).status_code == 200

    r = c.get("/v1/pools/p/stakes/alice")
    assert r.status_code == 200
    view = r.json()
    assert view["stake"]["amount"] == 1_000
    assert view["pending_units"] == 5_000

    r = c.get("/v1/pools/p")
    assert r.status_code == 200
    assert r.json()["reward_balance"] == 5_000

    r = c.post("/v1/instructions", json=_ix("CLAIM_REWARDS", "alice"))
    assert r.json()["result"]["rewards_paid"] == 5_000
    assert host.balance(REWARD, "alice") == 5_000


def test_rejections_map_to_http_status(client) -> None:
    c, _host = client
    c.post("/v1/instructions", json=_ix("INITIALIZE_POOL", "admin", tau_seconds=TAU))

    r = c.post("/v1/instructions", json=_ix("STAKE", "alice", amount=0))
    assert r.status_code == 400
    assert r.json() == {"ok": False, "error": {"code": "policy", "reason": "zero_amount", "details": {"instruction": "STAKE"}}}

    r = c.post("/v1/instructions", json=_ix("UPDATE_POOL_SETTINGS", "alice", min_stake_amount=5))
    assert r.status_code == 403
    assert r.json()["error"]["reason"] == "invalid_authority"

    r = c.post("/v1/instructions", json=_ix("CLAIM_REWARDS", "nobody"))
    assert r.status_code == 404

    r = c.post("/v1/instructions", json=[1, 2])
    assert r.status_code == 400
    assert r.json()["error"]["reason"] == "body_must_be_object"


def test_unknown_records_are_404(client) -> None:
    c, _host = client
    r = c.get("/v1/pools/missing")
    assert r.status_code == 404
    assert r.json()["error"]["reason"] == "pool_not_found"

    c.post("/v1/instructions", json=_ix("INITIALIZE_POOL", "admin", tau_seconds=TAU))
    r = c.get("/v1/pools/p/stakes/ghost")
    assert r.status_code == 404
    assert r.json()["error"]["reason"] == "stake_not_found"


def test_request_id_header_is_echoed(client) -> None:
    c, _host = client
    r = c.get("/v1/health", headers={"x-request-id": "req-123"})
    assert r.headers.get("x-request-id") == "req-123"
