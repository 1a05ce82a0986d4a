# src/stakeweight/runtime/domain_dispatch.py

from __future__ import annotations

from typing import Any, Callable, Dict, Optional

from stakeweight.runtime.errors import ApplyError
from stakeweight.runtime.tx_admission_types import ApplyContext, InstructionEnvelope
from stakeweight.runtime.tx_schema import validate_payload

# Domain appliers (each returns Optional[Json]; returning None means "not claimed")
from stakeweight.runtime.apply.pool import apply_pool
from stakeweight.runtime.apply.recovery import apply_recovery
from stakeweight.runtime.apply.stake import apply_stake

Json = Dict[str, Any]
ApplyFn = Callable[[ApplyContext, InstructionEnvelope], Optional[Json]]


_APPLIERS: tuple[ApplyFn, ...] = (
    apply_pool,
    apply_stake,
    apply_recovery,
)


def apply_instruction(ctx: ApplyContext, env: Any) -> Json:
    """Dispatch an instruction to the first domain applier that claims it.

    The context holds working copies of the records; on ApplyError the
    caller discards them, so appliers may fail after partial mutation.
    """

    # Tests and some tools pass raw dict envelopes.
    env_norm: InstructionEnvelope = InstructionEnvelope.from_json(env)

    t = env_norm.instruction
    if not t:
        raise ApplyError("invalid_payload", "missing_instruction", {"instruction": t})
    if not env_norm.pool_id:
        raise ApplyError("invalid_payload", "missing_pool_id", {"instruction": t})

    ok, code, reason, details = validate_payload(instruction=t, payload=env_norm.payload)
    if not ok:
        raise ApplyError(code, reason, details)

    for fn in _APPLIERS:
        try:
            out = fn(ctx, env_norm)
        except ApplyError:
            raise
        except Exception as e:
            code = getattr(e, "code", None)
            reason = getattr(e, "reason", None)
            details = getattr(e, "details", None)

            if code is not None or reason is not None:
                raise ApplyError(
                    str(code or "domain_error"),
                    str(reason or type(e).__name__),
                    details if details is not None else {"instruction": t, "domain": fn.__name__},
                ) from e

            raise ApplyError(
                "domain_error",
                type(e).__name__,
                {"instruction": t, "domain": fn.__name__, "error": str(e)},
            ) from e

        if out is not None:
            return out

    raise ApplyError("tx_unimplemented", "instruction_not_implemented", {"instruction": t})
