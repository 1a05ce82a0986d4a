from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from stakeweight.ledger.constants import WAD
from stakeweight.ledger.migrations import migrate_pool_dict, migrate_stake_dict
from stakeweight.ledger.types import PoolRecord, StakeRecord
from stakeweight.runtime.aggregate import pool_total_weight
from stakeweight.runtime.domain_dispatch import apply_instruction
from stakeweight.runtime.engine_config import EngineConfig
from stakeweight.runtime.errors import ApplyError
from stakeweight.runtime.host import Host, MemoryHost, execute_transfer
from stakeweight.runtime.rebase import needs_rebase, sync_stake_to_pool
from stakeweight.runtime.settlement import pending_rewards, stake_weight
from stakeweight.runtime.sqlite_db import SqliteDB, SqliteStakeStore
from stakeweight.runtime.stake_store import MemoryStakeStore, StakeStore
from stakeweight.runtime.state_invariants import check_pool, check_stake
from stakeweight.runtime.structured_log import log_event
from stakeweight.runtime.tx_admission_types import (
    ApplyContext,
    ApplyOutcome,
    InstructionEnvelope,
    Transfer,
)

Json = Dict[str, Any]

logger = logging.getLogger("stakeweight.executor")


class ExecutorError(RuntimeError):
    pass


def _ensure_parent(path: str) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)


def _schema_error(kind: str, key: Dict[str, str], e: ValueError) -> ApplyError:
    return ApplyError("invalid_state", "record_schema_error", {"record": kind, **key, "error": str(e)})


def _load_pool(session: Any, pool_id: str) -> Optional[PoolRecord]:
    raw = session.load_pool(pool_id)
    if raw is None:
        return None
    try:
        return PoolRecord.from_dict(migrate_pool_dict(raw))
    except ValueError as e:
        raise _schema_error("pool", {"pool_id": pool_id}, e) from e


def _load_stake(session: Any, pool_id: str, owner: str) -> Optional[StakeRecord]:
    raw = session.load_stake(pool_id, owner)
    if raw is None:
        return None
    try:
        return StakeRecord.from_dict(migrate_stake_dict(raw))
    except ValueError as e:
        raise _schema_error("stake", {"pool_id": pool_id, "owner": owner}, e) from e


class StakingExecutor:
    """Runs instructions against persisted records.

    One instruction = one store transaction:
      load + migrate records -> apply on working copies -> check invariants
      -> write records -> execute transfers.
    Any exception before the transaction closes rolls the records back, and
    transfers already executed are reversed.
    """

    def __init__(self, *, store: StakeStore, host: Host) -> None:
        self._store = store
        self._host = host

    @classmethod
    def open_sqlite(cls, *, db_path: str, host: Host) -> "StakingExecutor":
        _ensure_parent(db_path)
        return cls(store=SqliteStakeStore(db=SqliteDB(path=db_path)), host=host)

    @classmethod
    def in_memory(cls, *, host: Optional[Host] = None) -> "StakingExecutor":
        return cls(store=MemoryStakeStore(), host=host or MemoryHost())

    @classmethod
    def from_config(cls, cfg: EngineConfig, *, host: Optional[Host] = None) -> "StakingExecutor":
        h = host or MemoryHost()
        if cfg.db_path == ":memory:":
            return cls.in_memory(host=h)
        return cls.open_sqlite(db_path=cfg.db_path, host=h)

    @property
    def host(self) -> Host:
        return self._host

    @property
    def store(self) -> StakeStore:
        return self._store

    # ---- writes ----

    def submit(self, env: Any) -> ApplyOutcome:
        """Apply one instruction. Rejections are returned, not raised."""
        env_norm = InstructionEnvelope.from_json(env)
        try:
            outcome = self._apply(env_norm)
        except ApplyError as e:
            log_event(
                logger,
                "instruction_rejected",
                instruction=env_norm.instruction,
                pool_id=env_norm.pool_id,
                signer=env_norm.signer,
                code=e.code,
                reason=e.reason,
            )
            return ApplyOutcome.rejected(env_norm, e.code, e.reason, e.details if isinstance(e.details, dict) else None)

        log_event(
            logger,
            "instruction_applied",
            instruction=env_norm.instruction,
            pool_id=env_norm.pool_id,
            signer=env_norm.signer,
            transfers=len(outcome.transfers),
        )
        return outcome

    def _apply(self, env: InstructionEnvelope) -> ApplyOutcome:
        with self._store.transaction() as session:
            pool = _load_pool(session, env.pool_id)
            owner = env.stake_owner
            stake = _load_stake(session, env.pool_id, owner) if owner else None
            previous_pool = pool.copy() if pool is not None else None

            ctx = ApplyContext(
                now=int(self._host.current_time()),
                pool=pool,
                stake=stake,
                reward_balance=int(self._host.reward_balance(env.pool_id)),
            )
            result = apply_instruction(ctx, env)

            if ctx.pool is not None:
                check_pool(ctx.pool, previous_pool)
                session.save_pool(ctx.pool.to_dict())

            if ctx.stake is not None:
                if ctx.delete_stake:
                    session.delete_stake(ctx.stake.pool_id, ctx.stake.owner)
                else:
                    check_stake(ctx.stake, ctx.pool)
                    session.save_stake(ctx.stake.to_dict())

            # Records are written; transfers run last, still inside the transaction.
            self._execute_transfers(env, ctx.transfers)

        return ApplyOutcome.applied(env, result, ctx.transfers)

    def _execute_transfers(self, env: InstructionEnvelope, transfers: List[Transfer]) -> None:
        done: List[Transfer] = []
        try:
            for t in transfers:
                execute_transfer(self._host, t)
                done.append(t)
                log_event(
                    logger,
                    "transfer_executed",
                    instruction=env.instruction,
                    pool_id=env.pool_id,
                    **t.to_json(),
                )
        except Exception as e:
            for t in reversed(done):
                execute_transfer(self._host, Transfer(t.currency, t.dst, t.src, t.amount))
            if isinstance(e, ApplyError):
                raise
            raise ApplyError("transfer_failed", type(e).__name__, {"error": str(e)}) from e

    # ---- reads ----

    def read_pool(self, pool_id: str) -> Optional[PoolRecord]:
        raw = self._store.read_pool(pool_id)
        return PoolRecord.from_dict(migrate_pool_dict(raw)) if raw is not None else None

    def read_stake(self, pool_id: str, owner: str) -> Optional[StakeRecord]:
        raw = self._store.read_stake(pool_id, owner)
        return StakeRecord.from_dict(migrate_stake_dict(raw)) if raw is not None else None

    def pool_view(self, pool_id: str) -> Optional[Json]:
        pool = self.read_pool(pool_id)
        if pool is None:
            return None
        now = int(self._host.current_time())
        return {
            "pool": pool.to_dict(),
            "now": now,
            "total_weight": pool_total_weight(pool, now),
            "needs_rebase": needs_rebase(pool),
            "reward_balance": int(self._host.reward_balance(pool_id)),
        }

    def stake_view(self, pool_id: str, owner: str) -> Optional[Json]:
        """Stake record as the next instruction would see it, plus live weight and pending reward."""
        pool = self.read_pool(pool_id)
        stake = self.read_stake(pool_id, owner)
        if pool is None or stake is None:
            return None
        sync_stake_to_pool(stake, pool)
        now = int(self._host.current_time())
        pending = pending_rewards(pool, stake, now)
        return {
            "stake": stake.to_dict(),
            "now": now,
            "weight": stake_weight(pool, stake, now),
            "pending_rewards": pending,
            "pending_units": pending // WAD,
            "residual_units": stake.residual_units,
        }


def build_executor(cfg: EngineConfig, *, host: Optional[Host] = None) -> StakingExecutor:
    if not cfg.db_path:
        raise ExecutorError("db_path must be set")
    return StakingExecutor.from_config(cfg, host=host)
