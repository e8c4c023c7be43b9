"""
Single-use redeem codes that top up an account's link limit.

A code is flipped to consumed and its credit lands in the same immediate
transaction: either both happen or neither does.
"""

import base64
import binascii
import hashlib
import json
import logging
import re
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Union

import ledger
import storage
from errors import RedeemCodeAlreadyConsumed, RedeemCodeNotFound, RedeemFileInvalid

logger = logging.getLogger(__name__)

# 16 random bytes -> 128-bit token, hex encoded
TOKEN_BYTES = 16
TOKEN_RE = re.compile(r'^[0-9a-fA-F]{32}$')

_CODE_COLUMNS = "code, credit_amount, issued_by, consumed, consumed_by, issued_at, consumed_at"


@dataclass
class RedeemCode:
    code: str
    credit_amount: int
    issued_by: Optional[str]
    consumed: bool
    consumed_by: Optional[str]
    issued_at: str
    consumed_at: Optional[str] = None


@dataclass
class RedeemResult:
    code: str
    credited: int
    balance: int


def _row_to_code(row) -> RedeemCode:
    code, credit_amount, issued_by, consumed, consumed_by, issued_at, consumed_at = row
    return RedeemCode(
        code=code,
        credit_amount=int(credit_amount),
        issued_by=issued_by,
        consumed=bool(consumed),
        consumed_by=consumed_by,
        issued_at=issued_at,
        consumed_at=consumed_at,
    )


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


async def issue_code(amount: int, issuer_id: str) -> RedeemCode:
    """Create a new unconsumed code worth ``amount`` links (admin action)."""
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValueError(f"amount must be a positive integer, got {amount!r}")
    code = RedeemCode(
        code=secrets.token_hex(TOKEN_BYTES),
        credit_amount=amount,
        issued_by=str(issuer_id),
        consumed=False,
        consumed_by=None,
        issued_at=_now(),
    )
    async with storage.transaction() as db:
        await db.execute(
            "INSERT INTO redeem_codes (code, credit_amount, issued_by, consumed, issued_at) VALUES (?, ?, ?, 0, ?)",
            (code.code, code.credit_amount, code.issued_by, code.issued_at),
        )
    logger.info(f"Issued redeem code worth {amount} by {issuer_id}")
    return code


async def redeem_code(token: str, account_id: str) -> RedeemResult:
    """Consume ``token`` and credit its amount to ``account_id``."""
    token = (token or '').strip()
    account_id = str(account_id)
    async with storage.transaction() as db:
        cur = await db.execute(f"SELECT {_CODE_COLUMNS} FROM redeem_codes WHERE code = ?", (token,))
        row = await cur.fetchone()
        if not row:
            raise RedeemCodeNotFound()
        code = _row_to_code(row)
        # The WHERE consumed = 0 guard is the single-use gate under concurrency
        cur = await db.execute(
            "UPDATE redeem_codes SET consumed = 1, consumed_by = ?, consumed_at = ? WHERE code = ? AND consumed = 0",
            (account_id, _now(), token),
        )
        if cur.rowcount == 0:
            raise RedeemCodeAlreadyConsumed()
        account = await ledger.apply_credit(db, account_id, code.credit_amount)
    logger.info(f"Code redeemed by {account_id}: +{code.credit_amount}, balance {account.balance}")
    return RedeemResult(code=token, credited=code.credit_amount, balance=account.balance)


async def get_code(token: str) -> Optional[RedeemCode]:
    async with storage.connect() as db:
        cur = await db.execute(f"SELECT {_CODE_COLUMNS} FROM redeem_codes WHERE code = ?", (token,))
        row = await cur.fetchone()
    return _row_to_code(row) if row else None


async def list_codes(limit: int = 50) -> List[RedeemCode]:
    async with storage.connect() as db:
        cur = await db.execute(
            f"SELECT {_CODE_COLUMNS} FROM redeem_codes ORDER BY id DESC LIMIT ?",
            (limit,),
        )
        rows = await cur.fetchall()
    return [_row_to_code(r) for r in rows]


# --- Code file artifact ---

def pack_code_file(code: RedeemCode) -> bytes:
    """Serialize a code as ``sha256(json).base64(json)`` for handing out as a file."""
    payload = json.dumps(
        {'code': code.code, 'limit': code.credit_amount, 'timestamp': int(time.time() * 1000)},
        separators=(',', ':'),
    )
    digest = hashlib.sha256(payload.encode('utf-8')).hexdigest()
    encoded = base64.b64encode(payload.encode('utf-8')).decode('ascii')
    return f"{digest}.{encoded}".encode('ascii')


def read_code_file(data: Union[bytes, bytearray, str]) -> str:
    """Return the token carried by a code file, or a bare pasted token."""
    if isinstance(data, (bytes, bytearray)):
        try:
            text = bytes(data).decode('utf-8')
        except UnicodeDecodeError:
            raise RedeemFileInvalid("The file could not be read.")
    else:
        text = data
    text = text.strip()
    if TOKEN_RE.match(text):
        return text.lower()
    if '.' not in text:
        raise RedeemFileInvalid("The file could not be read.")
    digest, encoded = text.split('.', 1)
    try:
        payload = base64.b64decode(encoded, validate=True).decode('utf-8')
    except (binascii.Error, UnicodeDecodeError):
        raise RedeemFileInvalid("The file could not be read.")
    if not secrets.compare_digest(hashlib.sha256(payload.encode('utf-8')).hexdigest(), digest.lower()):
        raise RedeemFileInvalid()
    try:
        token = json.loads(payload).get('code')
    except (ValueError, AttributeError):
        raise RedeemFileInvalid("The file could not be read.")
    if not isinstance(token, str) or not token:
        raise RedeemFileInvalid("The file does not contain a code.")
    return token
