"""Save and restore bandit statistics across restarts."""

import asyncio
import json
from datetime import datetime, timezone
from typing import Any

import aiosqlite
from loguru import logger

from psp_router.bandit import BanditEngine

_SCHEMA = """
CREATE TABLE IF NOT EXISTS bandit_snapshots (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    policy TEXT NOT NULL,
    stats TEXT NOT NULL,
    created_at TEXT NOT NULL
)
"""


class SqliteSnapshotStore:
    """Append-only table of exported bandit tables; the newest row wins on load."""

    def __init__(self, db_path: str, keep: int = 20):
        self._db_path = db_path
        self._keep = keep

    async def ensure_schema(self) -> None:
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute(_SCHEMA)
            await db.commit()

    async def save(self, snapshot: dict[str, Any]) -> int:
        await self.ensure_schema()
        async with aiosqlite.connect(self._db_path) as db:
            cur = await db.execute(
                "INSERT INTO bandit_snapshots (policy, stats, created_at) VALUES (?, ?, ?)",
                (
                    snapshot.get("policy", ""),
                    json.dumps(snapshot.get("stats", {}), sort_keys=True),
                    datetime.now(timezone.utc).isoformat(),
                ),
            )
            row_id = cur.lastrowid
            if self._keep > 0:
                await db.execute(
                    """DELETE FROM bandit_snapshots WHERE id NOT IN (
                           SELECT id FROM bandit_snapshots ORDER BY id DESC LIMIT ?)""",
                    (self._keep,),
                )
            await db.commit()
        return row_id

    async def load_latest(self) -> dict[str, Any] | None:
        await self.ensure_schema()
        async with aiosqlite.connect(self._db_path) as db:
            cur = await db.execute(
                "SELECT policy, stats, created_at FROM bandit_snapshots ORDER BY id DESC LIMIT 1"
            )
            row = await cur.fetchone()
        if row is None:
            return None
        policy, stats_json, created_at = row
        try:
            stats = json.loads(stats_json)
        except json.JSONDecodeError as e:
            logger.warning(f"Snapshot from {created_at} is unreadable, ignoring: {e}")
            return None
        return {"policy": policy, "stats": stats, "created_at": created_at}


async def restore_engine(engine: BanditEngine, store: SqliteSnapshotStore) -> int:
    """Load the newest snapshot into ``engine``. Returns entries restored."""
    snapshot = await store.load_latest()
    if snapshot is None:
        logger.info("Bandit: no snapshot to restore, starting cold")
        return 0
    if snapshot["policy"] and snapshot["policy"] != engine.policy_name:
        logger.warning(
            f"Bandit: snapshot was taken with policy {snapshot['policy']}, "
            f"restoring into {engine.policy_name}"
        )
    return engine.restore(snapshot)


class SnapshotExporter:
    """Background task that periodically exports the engine's table."""

    def __init__(self, engine: BanditEngine, store: SqliteSnapshotStore, interval_s: float = 300.0):
        self._engine = engine
        self._store = store
        self._interval_s = interval_s
        self._task: asyncio.Task | None = None
        self.exports = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def export_now(self) -> None:
        await self._store.save(self._engine.snapshot())
        self.exports += 1
        logger.debug(f"Bandit: exported snapshot #{self.exports}")

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info(f"Bandit: snapshot exporter started (every {self._interval_s}s)")

    async def stop(self) -> None:
        """Cancel the loop and write one final snapshot."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.export_now()
        logger.info("Bandit: snapshot exporter stopped")

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval_s)
            try:
                await self.export_now()
            except Exception as e:
                logger.warning(f"Bandit: snapshot export failed: {e}")
