from __future__ import annotations

import asyncio
import sqlite3
from datetime import datetime, timezone
from typing import Callable, List, Optional, Set, TypeVar

from opentelemetry import trace

from internet_map.errors import ConsistencyError, StorageError
from internet_map.logging_setup import get_logger
from internet_map.models import BlockResult, ProbeResult

log = get_logger(__name__)
tracer = trace.get_tracer(__name__)

T = TypeVar("T")

# Block ids are prefix values, so consecutive blocks differ by one.
BLOCK_STEP = 1


def _gaps_between(descending: List[int], step: int = BLOCK_STEP) -> Set[int]:
    gaps: Set[int] = set()
    for hi, lo in zip(descending, descending[1:]):
        gaps.update(range(lo + step, hi, step))
    return gaps


class ProgressLedger:
    """Durable record of completed blocks and their result sets.

    Schema:
      blocks(block_id UNIQUE)                  one progress marker per completed block
      results(block_id, offset, reachable)     one row per address of a completed block

    A marker is only ever written in the same transaction as, and after, the
    block's result rows, so a marker implies a complete result set. Every
    call runs on a worker thread and is serialized through one lock.
    """

    def __init__(self, path: str, busy_timeout: float = 30.0):
        self.path = path
        self.busy_timeout = busy_timeout
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = asyncio.Lock()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            try:
                # Autocommit mode: transactions are opened explicitly in commit().
                self._conn = sqlite3.connect(
                    self.path, timeout=self.busy_timeout, check_same_thread=False, isolation_level=None
                )
            except sqlite3.Error as e:
                raise StorageError(f"cannot open ledger {self.path}: {e}") from e
        return self._conn

    async def _run(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        async with self._lock:
            try:
                return await asyncio.to_thread(fn, self.conn)
            except sqlite3.Error as e:
                raise StorageError(f"ledger {self.path}: {e}") from e

    async def __aenter__(self) -> "ProgressLedger":
        await self.initialize()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    # ---------------------------
    # Schema
    # ---------------------------
    @staticmethod
    def _init_schema(conn: sqlite3.Connection) -> None:
        c = conn.cursor()
        c.execute("PRAGMA journal_mode=WAL;")
        c.execute("PRAGMA synchronous=FULL;")
        c.execute(
            """
            CREATE TABLE IF NOT EXISTS blocks (
              block_id INTEGER NOT NULL,
              committed_at TEXT
            );
            """
        )
        c.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS blocks_block_id_uniq
            ON blocks(block_id);
            """
        )
        c.execute(
            """
            CREATE TABLE IF NOT EXISTS results (
              block_id INTEGER NOT NULL,
              "offset" INTEGER NOT NULL,
              reachable INTEGER NOT NULL,
              PRIMARY KEY (block_id, "offset")
            ) WITHOUT ROWID;
            """
        )

    async def initialize(self) -> None:
        await self._run(self._init_schema)
        log.info("ledger_ready", path=self.path)

    async def close(self) -> None:
        async with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    # ---------------------------
    # Queries
    # ---------------------------
    async def is_complete(self, block_id: int) -> bool:
        def q(conn: sqlite3.Connection) -> bool:
            row = conn.execute("SELECT 1 FROM blocks WHERE block_id = ?", (block_id,)).fetchone()
            return row is not None

        return await self._run(q)

    async def highest_completed(self) -> Optional[int]:
        def q(conn: sqlite3.Connection) -> Optional[int]:
            row = conn.execute("SELECT MAX(block_id) FROM blocks").fetchone()
            return None if row is None or row[0] is None else int(row[0])

        return await self._run(q)

    async def count_completed(self) -> int:
        def q(conn: sqlite3.Connection) -> int:
            return int(conn.execute("SELECT COUNT(*) FROM blocks").fetchone()[0])

        return await self._run(q)

    async def completed_ids(self, lower: int = 0, upper: Optional[int] = None) -> List[int]:
        """Completed block ids in ``[lower, upper)``, ascending."""

        def q(conn: sqlite3.Connection) -> List[int]:
            if upper is None:
                rows = conn.execute(
                    "SELECT block_id FROM blocks WHERE block_id >= ? ORDER BY block_id", (lower,)
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT block_id FROM blocks WHERE block_id >= ? AND block_id < ? ORDER BY block_id",
                    (lower, upper),
                ).fetchall()
            return [int(r[0]) for r in rows]

        return await self._run(q)

    async def find_gaps_near_head(self, n: int) -> Set[int]:
        """Missing block ids among the ``n`` most recently completed ones.

        Only the head of the ledger is inspected; holes further down are
        found by ``find_gaps``.
        """
        if n < 2:
            return set()

        def q(conn: sqlite3.Connection) -> List[int]:
            rows = conn.execute("SELECT block_id FROM blocks ORDER BY block_id DESC LIMIT ?", (n,)).fetchall()
            return [int(r[0]) for r in rows]

        return _gaps_between(await self._run(q))

    async def ensure_contiguous_head(self, n: int) -> None:
        gaps = await self.find_gaps_near_head(n)
        if gaps:
            raise ConsistencyError(gaps)

    async def find_gaps(self, lower: int = 0, upper: Optional[int] = None) -> Set[int]:
        """Every missing block id in ``[lower, upper)``.

        ``upper`` defaults to just past the high-water mark. This walks the
        whole ledger.
        """
        if upper is None:
            hwm = await self.highest_completed()
            if hwm is None:
                return set()
            upper = hwm + 1
        done = await self.completed_ids(lower, upper)
        missing = set(range(lower, upper, BLOCK_STEP))
        missing.difference_update(done)
        return missing

    async def result_set(self, block_id: int) -> List[ProbeResult]:
        def q(conn: sqlite3.Connection) -> List[ProbeResult]:
            rows = conn.execute(
                'SELECT "offset", reachable FROM results WHERE block_id = ? ORDER BY "offset"', (block_id,)
            ).fetchall()
            return [ProbeResult(offset=int(o), reachable=bool(r)) for o, r in rows]

        return await self._run(q)

    async def reachable_offsets(self, block_id: int) -> List[int]:
        def q(conn: sqlite3.Connection) -> List[int]:
            rows = conn.execute(
                'SELECT "offset" FROM results WHERE block_id = ? AND reachable = 1 ORDER BY "offset"', (block_id,)
            ).fetchall()
            return [int(r[0]) for r in rows]

        return await self._run(q)

    # ---------------------------
    # Commit
    # ---------------------------
    @staticmethod
    def _clear_block(conn: sqlite3.Connection, block_id: int) -> None:
        conn.execute("DELETE FROM blocks WHERE block_id = ?", (block_id,))
        conn.execute("DELETE FROM results WHERE block_id = ?", (block_id,))

    @staticmethod
    def _write_results(conn: sqlite3.Connection, result: BlockResult) -> None:
        conn.executemany('INSERT INTO results (block_id, "offset", reachable) VALUES (?, ?, ?)', result.rows())

    @staticmethod
    def _write_marker(conn: sqlite3.Connection, block_id: int) -> None:
        ts = datetime.now(timezone.utc).isoformat()
        conn.execute("INSERT INTO blocks (block_id, committed_at) VALUES (?, ?)", (block_id, ts))

    def _commit_sync(self, conn: sqlite3.Connection, result: BlockResult) -> None:
        conn.execute("BEGIN IMMEDIATE;")
        try:
            self._clear_block(conn, result.block_id)
            self._write_results(conn, result)
            # Marker last: its presence must imply the rows above are durable.
            self._write_marker(conn, result.block_id)
            conn.execute("COMMIT;")
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK;")
            raise

    async def commit(self, result: BlockResult) -> None:
        """Atomically replace the result set and progress marker of one block."""
        with tracer.start_as_current_span("block_commit") as span:
            span.set_attribute("sweep.block_id", result.block_id)
            await self._run(lambda conn: self._commit_sync(conn, result))
        log.info("block_committed", block_id=result.block_id, rows=len(result.results), reachable=result.reachable_count)
