from __future__ import annotations

"""Instruction payload schemas.

Every instruction has a strict pydantic model (unknown keys rejected). The
dispatcher validates the payload before any applier runs, so appliers can
rely on types and ranges; they still enforce the staking semantics
(zero amounts, caps, authority).
"""

from typing import Any, Dict, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr, ValidationError

from stakeweight.ledger.constants import U64_MAX, U128_MAX

Json = Dict[str, Any]


# ---------------------------------------------------------------------------
# Base Models
# ---------------------------------------------------------------------------


class _StrictModel(BaseModel):
    """Strict model: reject unknown keys."""

    model_config = ConfigDict(extra="forbid")


class _AmountPayload(_StrictModel):
    amount: StrictInt = Field(ge=0, le=U64_MAX)


class _EmptyPayload(_StrictModel):
    pass


# ---------------------------------------------------------------------------
# Pool administration
# ---------------------------------------------------------------------------


class InitializePoolPayload(_StrictModel):
    tau_seconds: StrictInt = Field(ge=0, le=U64_MAX)


class UpdatePoolSettingsPayload(_StrictModel):
    min_stake_amount: Optional[StrictInt] = Field(default=None, ge=0, le=U64_MAX)
    lock_duration_seconds: Optional[StrictInt] = Field(default=None, ge=0, le=U64_MAX)
    unstake_cooldown_seconds: Optional[StrictInt] = Field(default=None, ge=0, le=U64_MAX)


class FixTotalRewardDebtPayload(_StrictModel):
    new_total_reward_debt: StrictInt = Field(ge=0, le=U128_MAX)


# ---------------------------------------------------------------------------
# Participant
# ---------------------------------------------------------------------------


class StakePayload(_AmountPayload):
    pass


class StakeOnBehalfPayload(_AmountPayload):
    beneficiary: StrictStr = Field(min_length=1, max_length=256)


class UnstakePayload(_AmountPayload):
    pass


class RequestUnstakePayload(_AmountPayload):
    pass


class DepositRewardsPayload(_AmountPayload):
    pass


# ---------------------------------------------------------------------------
# Instruction -> schema mapping
# ---------------------------------------------------------------------------

Schema = Type[BaseModel]

_SCHEMA_BY_INSTRUCTION: Dict[str, Schema] = {
    "INITIALIZE_POOL": InitializePoolPayload,
    "UPDATE_POOL_SETTINGS": UpdatePoolSettingsPayload,
    "DEPOSIT_REWARDS": DepositRewardsPayload,
    "SYNC_POOL": _EmptyPayload,
    "SYNC_REWARDS": _EmptyPayload,
    "STAKE": StakePayload,
    "STAKE_ON_BEHALF": StakeOnBehalfPayload,
    "UNSTAKE": UnstakePayload,
    "REQUEST_UNSTAKE": RequestUnstakePayload,
    "COMPLETE_UNSTAKE": _EmptyPayload,
    "CANCEL_UNSTAKE_REQUEST": _EmptyPayload,
    "CLAIM_REWARDS": _EmptyPayload,
    "CLOSE_STAKE_ACCOUNT": _EmptyPayload,
    "RECOVER_STRANDED_REWARDS": _EmptyPayload,
    "FIX_TOTAL_REWARD_DEBT": FixTotalRewardDebtPayload,
}


def known_instructions() -> Tuple[str, ...]:
    return tuple(sorted(_SCHEMA_BY_INSTRUCTION.keys()))


def _schema_for(instruction: str) -> Optional[Schema]:
    t = str(instruction or "").strip().upper()
    if not t:
        return None
    return _SCHEMA_BY_INSTRUCTION.get(t)


def validate_payload(
    *,
    instruction: str,
    payload: Any,
) -> Tuple[bool, str, str, Optional[Dict[str, Any]]]:
    """Validate an instruction payload against its schema.

    Returns: (ok, code, reason, details)
    """
    sch = _schema_for(instruction)
    if sch is None:
        return False, "tx_unimplemented", "unknown_instruction", {"instruction": instruction}

    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        return False, "invalid_payload", "payload_must_be_object", None

    try:
        sch(**payload)
        return True, "", "", None
    except ValidationError as ve:
        errors = [
            {"loc": [str(p) for p in e.get("loc", ())], "type": str(e.get("type", "")), "msg": str(e.get("msg", ""))}
            for e in ve.errors()
        ]
        return False, "invalid_payload", "payload_schema_mismatch", {"errors": errors}


def parse_payload(instruction: str, payload: Any) -> BaseModel:
    """Return the validated model for a payload already accepted by validate_payload()."""
    sch = _schema_for(instruction)
    if sch is None:
        raise KeyError(instruction)
    return sch(**(payload or {}))
