import sqlite3
from contextlib import asynccontextmanager

import aiosqlite

from .config import DEFAULT_CONFIG
from .errors import StorageFault

# seconds a connection waits for another writer's lock before giving up
BUSY_TIMEOUT = 30.0

SCHEMA = """
PRAGMA journal_mode=WAL;
CREATE TABLE IF NOT EXISTS jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    queued_on TEXT NOT NULL,
    status TEXT NOT NULL,
    job_type TEXT NOT NULL,
    job_data_type TEXT NOT NULL,
    job_data TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_jobs_status_queued ON jobs(status, queued_on);
CREATE TABLE IF NOT EXISTS config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


@asynccontextmanager
async def connect_db(path: str, timeout: float = BUSY_TIMEOUT):
    """Open a connection in autocommit mode; callers issue BEGIN/COMMIT themselves."""
    try:
        conn = await aiosqlite.connect(path, timeout=timeout, isolation_level=None)
    except sqlite3.Error as e:
        raise StorageFault(f"Cannot open database {path!r}: {e}") from e
    conn.row_factory = aiosqlite.Row
    try:
        yield conn
    finally:
        await conn.close()


async def init_db(path: str):
    async with connect_db(path) as conn:
        try:
            await conn.executescript(SCHEMA)
            await conn.execute("BEGIN IMMEDIATE")
            # seed defaults
            for k, v in DEFAULT_CONFIG.items():
                await conn.execute(
                    "INSERT OR IGNORE INTO config(key, value) VALUES(?,?)", (k, v)
                )
            await conn.execute("COMMIT")
        except sqlite3.Error as e:
            raise StorageFault(f"DB error while creating schema: {e}") from e
