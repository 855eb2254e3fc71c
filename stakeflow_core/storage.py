"""
Account stores for StakeFlow pool and position records.

Both stores expose the same small surface:

    read(key)               -> record | None
    write(key, record)      -> None      (raises StoreConflict)
    write_batch({key: rec}, balances) -> None   (all or nothing)
    load_balances()         -> {(asset_id, owner): units}
    list_user_stakes(pool)  -> [UserStake, ...]

Every stored record has a version.  A write succeeds only when the
record's ``version`` equals the stored one (0 for a new key); the store
then bumps both.  That gives last-writer-safe read-modify-write per key
without any locking in the engine.

Token balances touched by an operation are passed to ``write_batch``
alongside the records, so the ledger state and the pool state are
persisted in the same transaction and survive a restart together.

Usage:
    store = SQLiteStore("data/stakeflow.db")
    pool = store.read(pool_address)
    ...
    store.write_batch(
        {pool.address: pool, stake.address: stake},
        balances={(asset_id, owner): 990, (asset_id, vault): 10},
    )
"""

from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path
from typing import Any, Mapping, Union

from stakeflow_core.errors import StoreConflict
from stakeflow_core.state import Pool, UserStake, record_from_dict

logger = logging.getLogger("stakeflow_storage")

Record = Union[Pool, UserStake]
Balances = Mapping[tuple[str, str], int]


class MemoryStore:
    """Dict-backed store; records are kept serialized so reads return copies."""

    def __init__(self) -> None:
        self._rows: dict[str, tuple[int, dict[str, Any]]] = {}
        self._balances: dict[tuple[str, str], int] = {}

    def read(self, key: str) -> Record | None:
        row = self._rows.get(key)
        if row is None:
            return None
        version, data = row
        return record_from_dict(dict(data), version=version)

    def write(self, key: str, record: Record) -> None:
        self.write_batch({key: record})

    def write_batch(self, records: Mapping[str, Record], balances: Balances | None = None) -> None:
        for key, record in records.items():
            current = self._rows.get(key, (0, None))[0]
            if current != record.version:
                raise StoreConflict(
                    f"Record {key[:16]} is at version {current}, "
                    f"write based on {record.version}"
                )
        for key, record in records.items():
            new_version = record.version + 1
            self._rows[key] = (new_version, record.to_dict())
            record.version = new_version
        self._balances.update(balances or {})

    def load_balances(self) -> dict[tuple[str, str], int]:
        return dict(self._balances)

    def list_user_stakes(self, pool_address: str) -> list[UserStake]:
        out: list[UserStake] = []
        for version, data in self._rows.values():
            if data.get("kind") == UserStake.KIND and data.get("pool_ref") == pool_address:
                out.append(UserStake.from_dict(dict(data), version=version))
        return out

    def list_pools(self) -> list[Pool]:
        return [
            Pool.from_dict(dict(data), version=version)
            for version, data in self._rows.values()
            if data.get("kind") == Pool.KIND
        ]

    def close(self) -> None:
        pass

    def __len__(self) -> int:
        return len(self._rows)


class SQLiteStore:
    """SQLite-backed store.  Records are JSON so 128-bit ints survive intact."""

    CURRENT_SCHEMA_VERSION = 2

    def __init__(self, db_path: str = "data/stakeflow.db"):
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        # autocommit mode; transactions are opened explicitly in write_batch
        self._conn = sqlite3.connect(db_path, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA busy_timeout = 5000")
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._create_tables()
        self._ensure_schema_version()
        logger.info(f"Storage opened: {db_path}")

    # ── schema ───────────────────────────────────────────────────

    def _create_tables(self) -> None:
        c = self._conn
        c.execute("""
            CREATE TABLE IF NOT EXISTS records (
                key      TEXT PRIMARY KEY,
                kind     TEXT NOT NULL,
                pool_ref TEXT,
                version  INTEGER NOT NULL,
                data     TEXT NOT NULL
            )
        """)
        c.execute(
            "CREATE INDEX IF NOT EXISTS idx_records_pool ON records (kind, pool_ref)"
        )
        c.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                id      INTEGER PRIMARY KEY CHECK (id = 1),
                version INTEGER NOT NULL
            )
        """)
        # units are TEXT: u64 balances do not fit SQLite's signed INTEGER
        c.execute("""
            CREATE TABLE IF NOT EXISTS balances (
                asset_id TEXT NOT NULL,
                owner    TEXT NOT NULL,
                units    TEXT NOT NULL,
                PRIMARY KEY (asset_id, owner)
            )
        """)

    def _ensure_schema_version(self) -> None:
        row = self._conn.execute(
            "SELECT version FROM schema_version WHERE id = 1"
        ).fetchone()
        if row is None:
            self._conn.execute(
                "INSERT INTO schema_version (id, version) VALUES (1, ?)",
                (self.CURRENT_SCHEMA_VERSION,),
            )
        elif row["version"] > self.CURRENT_SCHEMA_VERSION:
            raise RuntimeError(
                f"Database schema v{row['version']} is newer than this software "
                f"(v{self.CURRENT_SCHEMA_VERSION}).  Upgrade StakeFlow."
            )
        elif row["version"] < self.CURRENT_SCHEMA_VERSION:
            # v1 -> v2 only added the balances table, created above
            self._conn.execute(
                "UPDATE schema_version SET version = ? WHERE id = 1",
                (self.CURRENT_SCHEMA_VERSION,),
            )

    # ── records ──────────────────────────────────────────────────

    def read(self, key: str) -> Record | None:
        row = self._conn.execute(
            "SELECT version, data FROM records WHERE key = ?", (key,)
        ).fetchone()
        if row is None:
            return None
        return record_from_dict(json.loads(row["data"]), version=row["version"])

    def write(self, key: str, record: Record) -> None:
        self.write_batch({key: record})

    def write_batch(self, records: Mapping[str, Record], balances: Balances | None = None) -> None:
        c = self._conn
        c.execute("BEGIN IMMEDIATE")
        try:
            for key, record in records.items():
                row = c.execute(
                    "SELECT version FROM records WHERE key = ?", (key,)
                ).fetchone()
                current = row["version"] if row else 0
                if current != record.version:
                    raise StoreConflict(
                        f"Record {key[:16]} is at version {current}, "
                        f"write based on {record.version}"
                    )
                data = record.to_dict()
                c.execute(
                    """INSERT OR REPLACE INTO records
                       (key, kind, pool_ref, version, data)
                       VALUES (?, ?, ?, ?, ?)""",
                    (key, data["kind"], data.get("pool_ref"), current + 1,
                     json.dumps(data, sort_keys=True)),
                )
            for (asset_id, owner), units in (balances or {}).items():
                c.execute(
                    """INSERT OR REPLACE INTO balances (asset_id, owner, units)
                       VALUES (?, ?, ?)""",
                    (asset_id, owner, str(units)),
                )
        except BaseException:
            c.execute("ROLLBACK")
            raise
        c.execute("COMMIT")
        for record in records.values():
            record.version += 1

    def load_balances(self) -> dict[tuple[str, str], int]:
        rows = self._conn.execute("SELECT asset_id, owner, units FROM balances").fetchall()
        return {(r["asset_id"], r["owner"]): int(r["units"]) for r in rows}

    def list_user_stakes(self, pool_address: str) -> list[UserStake]:
        rows = self._conn.execute(
            "SELECT version, data FROM records WHERE kind = ? AND pool_ref = ?",
            (UserStake.KIND, pool_address),
        ).fetchall()
        return [
            UserStake.from_dict(json.loads(r["data"]), version=r["version"])
            for r in rows
        ]

    def list_pools(self) -> list[Pool]:
        rows = self._conn.execute(
            "SELECT version, data FROM records WHERE kind = ?", (Pool.KIND,)
        ).fetchall()
        return [Pool.from_dict(json.loads(r["data"]), version=r["version"]) for r in rows]

    # ── lifecycle ────────────────────────────────────────────────

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> SQLiteStore:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def __len__(self) -> int:
        row = self._conn.execute("SELECT COUNT(*) AS n FROM records").fetchone()
        return row["n"]


def open_store(backend: str = "memory", path: str = "data/stakeflow.db") -> MemoryStore | SQLiteStore:
    """Build a store from ``[storage]`` config values."""
    if backend == "memory":
        return MemoryStore()
    if backend == "sqlite":
        return SQLiteStore(path)
    raise ValueError(f"Unknown storage backend: {backend!r}")
