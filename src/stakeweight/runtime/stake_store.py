# src/stakeweight/runtime/stake_store.py
from __future__ import annotations

"""Record persistence contracts and the in-memory store.

Stores hand out raw JSON dicts; the executor migrates them into records.
All reads and writes of one instruction happen inside one transaction().
"""

import copy
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Protocol, Tuple

Json = Dict[str, Any]


class StakeSession(Protocol):
    def load_pool(self, pool_id: str) -> Optional[Json]: ...

    def save_pool(self, pool: Json) -> None: ...

    def load_stake(self, pool_id: str, owner: str) -> Optional[Json]: ...

    def save_stake(self, stake: Json) -> None: ...

    def delete_stake(self, pool_id: str, owner: str) -> None: ...


class StakeStore(Protocol):
    def transaction(self) -> Any: ...

    def read_pool(self, pool_id: str) -> Optional[Json]: ...

    def read_stake(self, pool_id: str, owner: str) -> Optional[Json]: ...

    def list_stakes(self, pool_id: str) -> List[Json]: ...


class _MemorySession:
    def __init__(self, pools: Dict[str, Json], stakes: Dict[Tuple[str, str], Json]) -> None:
        self.pools = pools
        self.stakes = stakes

    def load_pool(self, pool_id: str) -> Optional[Json]:
        rec = self.pools.get(pool_id)
        return copy.deepcopy(rec) if rec is not None else None

    def save_pool(self, pool: Json) -> None:
        self.pools[str(pool["pool_id"])] = copy.deepcopy(pool)

    def load_stake(self, pool_id: str, owner: str) -> Optional[Json]:
        rec = self.stakes.get((pool_id, owner))
        return copy.deepcopy(rec) if rec is not None else None

    def save_stake(self, stake: Json) -> None:
        self.stakes[(str(stake["pool_id"]), str(stake["owner"]))] = copy.deepcopy(stake)

    def delete_stake(self, pool_id: str, owner: str) -> None:
        self.stakes.pop((pool_id, owner), None)


class MemoryStakeStore:
    """Dict-backed store. A transaction works on a copy that replaces the
    committed maps only when the block exits without an exception."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._pools: Dict[str, Json] = {}
        self._stakes: Dict[Tuple[str, str], Json] = {}

    @contextmanager
    def transaction(self) -> Iterator[_MemorySession]:
        with self._lock:
            session = _MemorySession(dict(self._pools), dict(self._stakes))
            yield session
            self._pools = session.pools
            self._stakes = session.stakes

    def read_pool(self, pool_id: str) -> Optional[Json]:
        with self._lock:
            rec = self._pools.get(pool_id)
            return copy.deepcopy(rec) if rec is not None else None

    def read_stake(self, pool_id: str, owner: str) -> Optional[Json]:
        with self._lock:
            rec = self._stakes.get((pool_id, owner))
            return copy.deepcopy(rec) if rec is not None else None

    def list_stakes(self, pool_id: str) -> List[Json]:
        with self._lock:
            return [copy.deepcopy(v) for (pid, _owner), v in sorted(self._stakes.items()) if pid == pool_id]
