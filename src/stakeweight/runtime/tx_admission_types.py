from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from stakeweight.ledger.types import PoolRecord, StakeRecord

Json = Dict[str, Any]

ASSET = "asset"
REWARD = "reward"

# Instructions that operate on a participant's stake record, and whose
# payload names a beneficiary other than the signer.
STAKE_RECORD_INSTRUCTIONS = {
    "STAKE",
    "STAKE_ON_BEHALF",
    "UNSTAKE",
    "REQUEST_UNSTAKE",
    "COMPLETE_UNSTAKE",
    "CANCEL_UNSTAKE_REQUEST",
    "CLAIM_REWARDS",
    "CLOSE_STAKE_ACCOUNT",
}


def asset_vault(pool_id: str) -> str:
    return f"pool:{pool_id}:vault"


def reward_vault(pool_id: str) -> str:
    return f"pool:{pool_id}:rewards"


@dataclass(frozen=True)
class InstructionEnvelope:
    instruction: str
    signer: str
    pool_id: str
    payload: Dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def from_json(j: Any) -> "InstructionEnvelope":
        if isinstance(j, InstructionEnvelope):
            return j
        if not isinstance(j, dict):
            j = dict(j)  # type: ignore[arg-type]
        return InstructionEnvelope(
            instruction=str(j.get("instruction", "") or "").strip().upper(),
            signer=str(j.get("signer", "") or "").strip(),
            pool_id=str(j.get("pool_id", "") or "").strip(),
            payload=dict(j.get("payload", {}) or {}),
        )

    def to_json(self) -> Json:
        return {
            "instruction": self.instruction,
            "signer": self.signer,
            "pool_id": self.pool_id,
            "payload": dict(self.payload),
        }

    @property
    def stake_owner(self) -> Optional[str]:
        """Owner of the stake record this instruction touches, if any."""
        if self.instruction not in STAKE_RECORD_INSTRUCTIONS:
            return None
        if self.instruction == "STAKE_ON_BEHALF":
            return str(self.payload.get("beneficiary", "") or "").strip()
        return self.signer


@dataclass(frozen=True)
class Transfer:
    """A balance movement the executor performs after records are written."""

    currency: str  # ASSET | REWARD
    src: str
    dst: str
    amount: int

    def to_json(self) -> Json:
        return {"currency": self.currency, "src": self.src, "dst": self.dst, "amount": int(self.amount)}


@dataclass
class ApplyContext:
    """Everything a pure instruction transition may read or change.

    Appliers mutate pool/stake in place (they are working copies), queue
    transfers, and never talk to the host directly.
    """

    now: int
    pool: Optional[PoolRecord]
    stake: Optional[StakeRecord]
    # Reward vault balance before this instruction's transfers.
    reward_balance: int
    transfers: List[Transfer] = field(default_factory=list)
    delete_stake: bool = False

    def available_rewards(self) -> int:
        """Reward vault balance not yet committed to outgoing transfers."""
        if self.pool is None:
            return 0
        vault = reward_vault(self.pool.pool_id)
        committed = sum(t.amount for t in self.transfers if t.currency == REWARD and t.src == vault)
        return max(0, int(self.reward_balance) - committed)

    def transfer(self, currency: str, src: str, dst: str, amount: int) -> None:
        if int(amount) > 0:
            self.transfers.append(Transfer(currency, src, dst, int(amount)))


@dataclass(frozen=True)
class ApplyOutcome:
    ok: bool
    instruction: str
    pool_id: str
    result: Optional[Json] = None
    transfers: tuple = ()
    code: str = "ok"
    reason: str = "applied"
    details: Optional[Json] = None

    @staticmethod
    def applied(env: InstructionEnvelope, result: Optional[Json], transfers: List[Transfer]) -> "ApplyOutcome":
        return ApplyOutcome(True, env.instruction, env.pool_id, result, tuple(transfers))

    @staticmethod
    def rejected(env: InstructionEnvelope, code: str, reason: str, details: Optional[Json] = None) -> "ApplyOutcome":
        return ApplyOutcome(False, env.instruction, env.pool_id, None, (), code, reason, details)

    def to_json(self) -> Json:
        out: Json = {"ok": self.ok, "instruction": self.instruction, "pool_id": self.pool_id}
        if self.ok:
            out["result"] = self.result or {}
            out["transfers"] = [t.to_json() for t in self.transfers]
        else:
            out["error"] = {"code": self.code, "reason": self.reason, "details": self.details}
        return out
