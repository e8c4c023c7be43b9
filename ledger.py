"""
Account ledger: per-user link limit with a non-negative balance.

Every mutation is a single conditional UPDATE inside an immediate
transaction, so two sessions of the same account can never both spend the
same units.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

import aiosqlite

import storage
from errors import InsufficientBalance

logger = logging.getLogger(__name__)

_ACCOUNT_COLUMNS = "user_id, username, first_name, balance, is_admin, created_at"


@dataclass
class Account:
    account_id: str
    username: Optional[str]
    first_name: Optional[str]
    balance: int
    is_admin: bool
    created_at: Optional[str] = None


def _row_to_account(row) -> Account:
    user_id, username, first_name, balance, is_admin, created_at = row
    return Account(
        account_id=str(user_id),
        username=username,
        first_name=first_name,
        balance=int(balance or 0),
        is_admin=bool(is_admin),
        created_at=created_at,
    )


def _check_amount(amount: int) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValueError(f"amount must be a positive integer, got {amount!r}")
    return amount


async def _fetch(db: aiosqlite.Connection, account_id: str) -> Optional[Account]:
    cur = await db.execute(f"SELECT {_ACCOUNT_COLUMNS} FROM users WHERE user_id = ?", (account_id,))
    row = await cur.fetchone()
    return _row_to_account(row) if row else None


async def get_or_create_account(
    account_id: str,
    username: Optional[str] = None,
    first_name: Optional[str] = None,
    is_admin: bool = False,
) -> Account:
    """Create the account on first contact; an existing balance is never touched."""
    account_id = str(account_id)
    async with storage.transaction() as db:
        cur = await db.execute(
            "INSERT OR IGNORE INTO users (user_id, username, first_name, balance, is_admin) VALUES (?, ?, ?, 0, ?)",
            (account_id, username, first_name, int(is_admin)),
        )
        if cur.rowcount:
            logger.info(f"Created account {account_id} (admin={is_admin})")
        elif is_admin:
            await db.execute("UPDATE users SET is_admin = 1 WHERE user_id = ? AND is_admin = 0", (account_id,))
        return await _fetch(db, account_id)


async def get_account(account_id: str) -> Optional[Account]:
    async with storage.connect() as db:
        return await _fetch(db, str(account_id))


async def get_balance(account_id: str) -> int:
    account = await get_account(account_id)
    return account.balance if account else 0


async def try_debit(account_id: str, amount: int) -> Account:
    """Atomically take ``amount`` units or raise InsufficientBalance without mutating."""
    _check_amount(amount)
    account_id = str(account_id)
    async with storage.transaction() as db:
        cur = await db.execute(
            "UPDATE users SET balance = balance - ? WHERE user_id = ? AND balance >= ?",
            (amount, account_id, amount),
        )
        account = await _fetch(db, account_id)
        if cur.rowcount == 0:
            available = account.balance if account else 0
            logger.info(f"Debit of {amount} rejected for {account_id}: balance {available}")
            raise InsufficientBalance(required=amount, available=available)
    logger.info(f"Debited {amount} from {account_id}, balance now {account.balance}")
    return account


async def apply_credit(db: aiosqlite.Connection, account_id: str, amount: int) -> Account:
    """Increment inside a transaction owned by the caller (no commit here)."""
    _check_amount(amount)
    account_id = str(account_id)
    await db.execute("INSERT OR IGNORE INTO users (user_id, balance) VALUES (?, 0)", (account_id,))
    await db.execute("UPDATE users SET balance = balance + ? WHERE user_id = ?", (amount, account_id))
    return await _fetch(db, account_id)


async def credit(account_id: str, amount: int) -> Account:
    async with storage.transaction() as db:
        account = await apply_credit(db, account_id, amount)
    logger.info(f"Credited {amount} to {account_id}, balance now {account.balance}")
    return account


async def list_accounts() -> List[Account]:
    async with storage.connect() as db:
        cur = await db.execute(f"SELECT {_ACCOUNT_COLUMNS} FROM users ORDER BY balance DESC, user_id")
        rows = await cur.fetchall()
    return [_row_to_account(r) for r in rows]
