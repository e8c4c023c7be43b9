"""
SQLite storage bootstrap shared by the ledger, redeem codes and orders.

All modules go through ``connect()`` / ``transaction()`` so the database
location can be switched at runtime (tests point ``DB_PATH`` at a temp file).
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import List

import aiosqlite

logger = logging.getLogger(__name__)

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
DB_PATH = os.getenv('DB_PATH') or os.path.join(BASE_DIR, 'bot.db')
# SQLite timeout (seconds) when DB is busy
DB_TIMEOUT = float(os.getenv('DB_TIMEOUT', '30'))


def connect() -> aiosqlite.Connection:
    """Plain connection for reads and single-statement writes."""
    return aiosqlite.connect(DB_PATH, timeout=DB_TIMEOUT)


@asynccontextmanager
async def transaction():
    """Write transaction holding the RESERVED lock from the first statement.

    BEGIN IMMEDIATE makes concurrent writers queue on the busy timeout instead
    of failing on a lock upgrade halfway through a read-modify-write.
    """
    async with aiosqlite.connect(DB_PATH, timeout=DB_TIMEOUT, isolation_level=None) as db:
        await db.execute("BEGIN IMMEDIATE")
        try:
            yield db
        except BaseException:
            await db.rollback()
            raise
        else:
            await db.commit()


async def init_db():
    async with connect() as db:
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS users (
                user_id TEXT PRIMARY KEY,
                username TEXT,
                first_name TEXT,
                balance INTEGER NOT NULL DEFAULT 0 CHECK (balance >= 0),
                is_admin INTEGER NOT NULL DEFAULT 0,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
            """
        )
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS redeem_codes (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                code TEXT NOT NULL UNIQUE,
                credit_amount INTEGER NOT NULL CHECK (credit_amount > 0),
                issued_by TEXT,
                consumed INTEGER NOT NULL DEFAULT 0,
                consumed_by TEXT,
                issued_at TEXT NOT NULL,
                consumed_at TEXT
            )
            """
        )
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS orders (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                link TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'Pending',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS order_services (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                order_id INTEGER NOT NULL REFERENCES orders(id),
                service_key TEXT NOT NULL,
                service_id TEXT NOT NULL,
                quantity INTEGER NOT NULL,
                external_id TEXT,
                status TEXT,
                start_count TEXT,
                remains TEXT
            )
            """
        )
        await db.execute("CREATE INDEX IF NOT EXISTS idx_orders_user ON orders(user_id, id)")
        await db.execute("CREATE INDEX IF NOT EXISTS idx_order_services_order ON order_services(order_id)")
        await db.commit()
    await _migrate_users_table()


async def _migrate_users_table():
    # Lightweight migrations for users columns added after initial deploy
    async with connect() as db:
        cur = await db.execute("PRAGMA table_info(users)")
        cols = {r[1] for r in await cur.fetchall()}
        migs: List[str] = []
        if 'is_admin' not in cols:
            migs.append("ALTER TABLE users ADD COLUMN is_admin INTEGER NOT NULL DEFAULT 0")
        if 'created_at' not in cols:
            migs.append("ALTER TABLE users ADD COLUMN created_at TIMESTAMP")
        for sql_m in migs:
            logger.info(f"_migrate_users_table: {sql_m}")
            await db.execute(sql_m)
        if migs:
            await db.commit()
