# src/stakeweight/runtime/sqlite_db.py
from __future__ import annotations

import json
import os
import random
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

Json = Dict[str, Any]


def _now_ms() -> int:
    return int(time.time() * 1000)


def _canon_json(obj: Any) -> str:
    """Canonical JSON encoding.

    Keep this stable: records are compared byte-for-byte in tests and tools.
    """
    # Do not silently coerce unknown types (e.g. default=str). A non-JSON value
    # in a record is a bug and must fail here rather than round-trip as a string.
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _env_int(name: str, default: int) -> int:
    try:
        raw = str(os.environ.get(name, "")).strip()
        return int(raw) if raw else int(default)
    except Exception:
        return int(default)


class SqliteDB:
    """SQLite manager for pool and stake records.

    Design goals:
      - single durable DB file
      - cross-process safe (SQLite locks)
      - cross-thread safe by never sharing connections

    SQLite allows only one writer at a time. Under multi-process workloads,
    BEGIN IMMEDIATE can transiently fail with "database is locked", so
    write_tx() retries within a bounded deadline.
    """

    SCHEMA_VERSION = 1

    def __init__(self, *, path: str) -> None:
        self.path = str(path)

    @staticmethod
    def _sqlite_synchronous_pragma() -> str:
        """Return a safe PRAGMA synchronous value.

        Defaults:
          - prod        -> FULL
          - dev/testnet -> NORMAL

        Override with STAKEWEIGHT_SQLITE_SYNCHRONOUS in {OFF,NORMAL,FULL,EXTRA}.
        """
        mode = (os.environ.get("STAKEWEIGHT_MODE") or "prod").strip().lower()
        default = "FULL" if mode == "prod" else "NORMAL"
        raw = (os.environ.get("STAKEWEIGHT_SQLITE_SYNCHRONOUS") or default).strip().upper()

        allowed = {"OFF", "NORMAL", "FULL", "EXTRA"}
        if raw not in allowed:
            # Never accept unknown values.
            raw = default
        return raw

    def ensure_parent_dir(self) -> None:
        p = Path(self.path)
        p.parent.mkdir(parents=True, exist_ok=True)

    def _connect(self) -> sqlite3.Connection:
        self.ensure_parent_dir()

        connect_timeout_s = float(_env_int("STAKEWEIGHT_SQLITE_CONNECT_TIMEOUT_MS", 30_000)) / 1000.0

        con = sqlite3.connect(
            self.path,
            timeout=connect_timeout_s,
            isolation_level=None,  # we manage BEGIN/COMMIT ourselves
            check_same_thread=False,
        )
        con.row_factory = sqlite3.Row

        # Per-connection pragmas so every read/write path shares the same
        # durability and concurrency behavior.
        allow_non_wal = (os.environ.get("STAKEWEIGHT_SQLITE_ALLOW_NON_WAL") or "").strip() in {"1", "true", "TRUE"}
        row = con.execute("PRAGMA journal_mode=WAL;").fetchone()
        mode = str(row[0]).strip().lower() if row is not None else ""
        if mode and mode != "wal" and not allow_non_wal:
            con.close()
            raise RuntimeError(f"sqlite journal_mode is '{mode}', expected 'wal'")

        con.execute(f"PRAGMA synchronous={self._sqlite_synchronous_pragma()};")
        con.execute("PRAGMA foreign_keys=ON;")
        con.execute("PRAGMA temp_store=MEMORY;")

        busy_ms = _env_int("STAKEWEIGHT_SQLITE_BUSY_TIMEOUT_MS", int(connect_timeout_s * 1000))
        busy_ms = max(0, int(busy_ms))
        con.execute(f"PRAGMA busy_timeout={busy_ms};")

        return con

    def init_schema(self) -> None:
        # Schema creation takes write locks; reuse write_tx() retry policy.
        with self.write_tx() as con:
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS meta (
                  key TEXT PRIMARY KEY,
                  value TEXT NOT NULL
                );
                """
            )

            con.execute(
                """
                CREATE TABLE IF NOT EXISTS pools (
                  pool_id TEXT PRIMARY KEY,
                  pool_json TEXT NOT NULL,
                  updated_ts_ms INTEGER NOT NULL
                );
                """
            )

            con.execute(
                """
                CREATE TABLE IF NOT EXISTS stakes (
                  pool_id TEXT NOT NULL,
                  owner TEXT NOT NULL,
                  stake_json TEXT NOT NULL,
                  updated_ts_ms INTEGER NOT NULL,
                  PRIMARY KEY (pool_id, owner),
                  FOREIGN KEY (pool_id) REFERENCES pools(pool_id)
                );
                """
            )
            con.execute("CREATE INDEX IF NOT EXISTS idx_stakes_pool ON stakes(pool_id);")

            row = con.execute("SELECT value FROM meta WHERE key='schema_version' LIMIT 1;").fetchone()
            if row is None:
                con.execute("INSERT INTO meta(key, value) VALUES('schema_version', ?);", (str(self.SCHEMA_VERSION),))
            else:
                try:
                    v = int(str(row["value"]))
                except ValueError:
                    v = 0
                if v != self.SCHEMA_VERSION:
                    raise RuntimeError(
                        f"sqlite schema_version mismatch: have={v} want={self.SCHEMA_VERSION}. "
                        "Refuse to start to avoid corrupting data."
                    )

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        con = self._connect()
        try:
            yield con
        finally:
            con.close()

    @staticmethod
    def _is_locked_error(e: Exception) -> bool:
        msg = str(e).lower()
        return ("database is locked" in msg) or ("database is busy" in msg) or ("locked" in msg and "database" in msg)

    def _backoff(self, attempt: int, base_sleep: float, max_sleep: float) -> None:
        sleep_s = min(max_sleep, base_sleep * (2.0 ** min(attempt, 8)))
        sleep_s = sleep_s * (0.5 + random.random())  # jitter in [0.5x, 1.5x]
        time.sleep(sleep_s)

    @contextmanager
    def write_tx(self) -> Iterator[sqlite3.Connection]:
        """Open a write transaction with bounded retry on writer-lock contention.

        Policy:
          - retry BEGIN IMMEDIATE until a deadline
          - exponential backoff with jitter
          - then raise (fail closed) if we cannot acquire within deadline
          - any exception inside the block rolls the transaction back
        """
        deadline_ms = _env_int("STAKEWEIGHT_SQLITE_WRITE_DEADLINE_MS", 30_000)
        deadline_ms = max(250, int(deadline_ms))
        deadline_ts = _now_ms() + deadline_ms

        base_sleep = float(_env_int("STAKEWEIGHT_SQLITE_WRITE_BACKOFF_BASE_MS", 5)) / 1000.0
        max_sleep = float(_env_int("STAKEWEIGHT_SQLITE_WRITE_BACKOFF_MAX_MS", 250)) / 1000.0
        base_sleep = max(0.001, base_sleep)
        max_sleep = max(base_sleep, max_sleep)

        with self.connection() as con:
            attempt = 0
            while True:
                try:
                    con.execute("BEGIN IMMEDIATE;")
                    break
                except sqlite3.OperationalError as e:
                    if not self._is_locked_error(e):
                        raise
                    if _now_ms() >= deadline_ts:
                        raise
                    self._backoff(attempt, base_sleep, max_sleep)
                    attempt += 1

            try:
                yield con

                c_attempt = 0
                while True:
                    try:
                        con.execute("COMMIT;")
                        break
                    except sqlite3.OperationalError as e:
                        if not self._is_locked_error(e):
                            raise
                        if _now_ms() >= deadline_ts:
                            raise
                        self._backoff(c_attempt, base_sleep, max_sleep)
                        c_attempt += 1
            except BaseException:
                con.execute("ROLLBACK;")
                raise


def _load_json_object(raw: Any, what: str) -> Json:
    obj = json.loads(str(raw))
    if not isinstance(obj, dict):
        raise ValueError(f"{what} is not a JSON object")
    return obj


class _SqliteSession:
    def __init__(self, con: sqlite3.Connection) -> None:
        self._con = con

    def load_pool(self, pool_id: str) -> Optional[Json]:
        row = self._con.execute("SELECT pool_json FROM pools WHERE pool_id=?;", (pool_id,)).fetchone()
        return _load_json_object(row["pool_json"], "pool record") if row is not None else None

    def save_pool(self, pool: Json) -> None:
        self._con.execute(
            """
            INSERT INTO pools(pool_id, pool_json, updated_ts_ms)
            VALUES(?, ?, ?)
            ON CONFLICT(pool_id) DO UPDATE SET
              pool_json=excluded.pool_json,
              updated_ts_ms=excluded.updated_ts_ms;
            """,
            (str(pool["pool_id"]), _canon_json(pool), _now_ms()),
        )

    def load_stake(self, pool_id: str, owner: str) -> Optional[Json]:
        row = self._con.execute(
            "SELECT stake_json FROM stakes WHERE pool_id=? AND owner=?;",
            (pool_id, owner),
        ).fetchone()
        return _load_json_object(row["stake_json"], "stake record") if row is not None else None

    def save_stake(self, stake: Json) -> None:
        self._con.execute(
            """
            INSERT INTO stakes(pool_id, owner, stake_json, updated_ts_ms)
            VALUES(?, ?, ?, ?)
            ON CONFLICT(pool_id, owner) DO UPDATE SET
              stake_json=excluded.stake_json,
              updated_ts_ms=excluded.updated_ts_ms;
            """,
            (str(stake["pool_id"]), str(stake["owner"]), _canon_json(stake), _now_ms()),
        )

    def delete_stake(self, pool_id: str, owner: str) -> None:
        self._con.execute("DELETE FROM stakes WHERE pool_id=? AND owner=?;", (pool_id, owner))


class SqliteStakeStore:
    """Pool and stake records persisted in SQLite, one JSON row per record.

    transaction() is a single BEGIN IMMEDIATE write transaction: everything
    an instruction reads and writes commits together or not at all.
    """

    def __init__(self, *, db: SqliteDB) -> None:
        self._db = db
        self._db.init_schema()

    @contextmanager
    def transaction(self) -> Iterator[_SqliteSession]:
        with self._db.write_tx() as con:
            yield _SqliteSession(con)

    def read_pool(self, pool_id: str) -> Optional[Json]:
        with self._db.connection() as con:
            return _SqliteSession(con).load_pool(pool_id)

    def read_stake(self, pool_id: str, owner: str) -> Optional[Json]:
        with self._db.connection() as con:
            return _SqliteSession(con).load_stake(pool_id, owner)

    def list_stakes(self, pool_id: str) -> List[Json]:
        with self._db.connection() as con:
            rows = con.execute(
                "SELECT stake_json FROM stakes WHERE pool_id=? ORDER BY owner;",
                (pool_id,),
            ).fetchall()
        return [_load_json_object(r["stake_json"], "stake record") for r in rows]
