# src/stakeweight/runtime/host.py
from __future__ import annotations

"""Host collaborators: clock and balance transfers.

The engine never moves balances itself. Appliers queue Transfer objects and
the executor hands them to a Host after the records are written, inside the
same store transaction.
"""

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol, Tuple

from stakeweight.runtime.errors import ApplyError
from stakeweight.runtime.tx_admission_types import ASSET, REWARD, Transfer, reward_vault


@dataclass
class HostTransferError(ApplyError):
    code: str
    reason: str
    details: Optional[dict] = None


class Host(Protocol):
    def current_time(self) -> int: ...

    def reward_balance(self, pool_id: str) -> int: ...

    def transfer_asset(self, src: str, dst: str, amount: int) -> None: ...

    def transfer_reward(self, src: str, dst: str, amount: int) -> None: ...


def execute_transfer(host: Host, t: Transfer) -> None:
    if t.currency == ASSET:
        host.transfer_asset(t.src, t.dst, t.amount)
    elif t.currency == REWARD:
        host.transfer_reward(t.src, t.dst, t.amount)
    else:
        raise HostTransferError("transfer_failed", "unknown_currency", {"currency": t.currency})


class MemoryHost:
    """In-memory balances per (currency, account) with an injectable clock.

    Each transfer is atomic: it either moves the full amount or raises
    HostTransferError without touching any balance.
    """

    def __init__(self, *, now: Optional[int] = None, clock: Optional[Callable[[], int]] = None) -> None:
        self._lock = threading.RLock()
        self._balances: Dict[Tuple[str, str], int] = {}
        self._now = now
        self._clock = clock or (lambda: int(time.time()))

    # ---- clock ----

    def current_time(self) -> int:
        if self._now is not None:
            return int(self._now)
        return int(self._clock())

    def set_time(self, now: int) -> None:
        self._now = int(now)

    def advance(self, seconds: int) -> int:
        self._now = self.current_time() + int(seconds)
        return self._now

    # ---- balances ----

    def balance(self, currency: str, account: str) -> int:
        with self._lock:
            return int(self._balances.get((currency, account), 0))

    def credit(self, currency: str, account: str, amount: int) -> None:
        """Mint into an account (test fixtures, external inflows)."""
        if int(amount) < 0:
            raise ValueError("credit amount must be >= 0")
        with self._lock:
            key = (currency, account)
            self._balances[key] = int(self._balances.get(key, 0)) + int(amount)

    def reward_balance(self, pool_id: str) -> int:
        return self.balance(REWARD, reward_vault(pool_id))

    def _transfer(self, currency: str, src: str, dst: str, amount: int) -> None:
        amount = int(amount)
        if amount <= 0:
            return
        if not src or not dst:
            raise HostTransferError("transfer_failed", "missing_account", {"src": src, "dst": dst})
        with self._lock:
            have = int(self._balances.get((currency, src), 0))
            if have < amount:
                raise HostTransferError(
                    "transfer_failed",
                    "insufficient_balance",
                    {"currency": currency, "account": src, "balance": have, "amount": amount},
                )
            self._balances[(currency, src)] = have - amount
            self._balances[(currency, dst)] = int(self._balances.get((currency, dst), 0)) + amount

    def transfer_asset(self, src: str, dst: str, amount: int) -> None:
        self._transfer(ASSET, src, dst, amount)

    def transfer_reward(self, src: str, dst: str, amount: int) -> None:
        self._transfer(REWARD, src, dst, amount)
