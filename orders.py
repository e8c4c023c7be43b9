"""
Order records: one row per submitted link plus one sub-row per external
service order placed for it.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

import storage

logger = logging.getLogger(__name__)


class OrderStatus(str, Enum):
    PENDING = 'Pending'
    PROCESSING = 'Processing'
    PARTIAL = 'Partial'
    IN_PROGRESS = 'In progress'
    ERROR = 'Error'
    SUCCESS = 'Success'


@dataclass
class ServicePlacement:
    service_key: str
    service_id: str
    quantity: int
    external_id: Optional[str] = None
    status: Optional[str] = None
    start_count: Optional[str] = None
    remains: Optional[str] = None


@dataclass
class OrderRecord:
    id: int
    account_id: str
    link: str
    status: OrderStatus
    created_at: str
    updated_at: str
    services: List[ServicePlacement] = field(default_factory=list)

    @property
    def external_ids(self) -> List[str]:
        return [s.external_id for s in self.services if s.external_id]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _as_status(value: str) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        return OrderStatus.PENDING


async def create_order(
    account_id: str,
    link: str,
    placements: List[ServicePlacement],
    status: OrderStatus,
) -> OrderRecord:
    """Persist one link's outcome; a record without any external id is always Error."""
    if not any(p.external_id for p in placements):
        status = OrderStatus.ERROR
    now = _now()
    async with storage.transaction() as db:
        cur = await db.execute(
            "INSERT INTO orders (user_id, link, status, created_at, updated_at) VALUES (?, ?, ?, ?, ?)",
            (str(account_id), link, status.value, now, now),
        )
        order_id = cur.lastrowid
        await db.executemany(
            """INSERT INTO order_services (order_id, service_key, service_id, quantity, external_id)
               VALUES (?, ?, ?, ?, ?)""",
            [(order_id, p.service_key, p.service_id, p.quantity, p.external_id) for p in placements],
        )
    return OrderRecord(
        id=order_id,
        account_id=str(account_id),
        link=link,
        status=status,
        created_at=now,
        updated_at=now,
        services=list(placements),
    )


async def _load_services(db, order_ids: List[int]) -> Dict[int, List[ServicePlacement]]:
    out: Dict[int, List[ServicePlacement]] = {oid: [] for oid in order_ids}
    if not order_ids:
        return out
    marks = ','.join('?' for _ in order_ids)
    cur = await db.execute(
        f"""SELECT order_id, service_key, service_id, quantity, external_id, status, start_count, remains
            FROM order_services WHERE order_id IN ({marks}) ORDER BY id""",
        tuple(order_ids),
    )
    for order_id, key, service_id, quantity, external_id, status, start_count, remains in await cur.fetchall():
        out[order_id].append(ServicePlacement(
            service_key=key,
            service_id=service_id,
            quantity=quantity,
            external_id=external_id,
            status=status,
            start_count=start_count,
            remains=remains,
        ))
    return out


def _row_to_order(row, services: List[ServicePlacement]) -> OrderRecord:
    oid, user_id, link, status, created_at, updated_at = row
    return OrderRecord(
        id=oid,
        account_id=user_id,
        link=link,
        status=_as_status(status),
        created_at=created_at,
        updated_at=updated_at,
        services=services,
    )


async def get_order(order_id: int) -> Optional[OrderRecord]:
    async with storage.connect() as db:
        cur = await db.execute(
            "SELECT id, user_id, link, status, created_at, updated_at FROM orders WHERE id = ?",
            (order_id,),
        )
        row = await cur.fetchone()
        if not row:
            return None
        services = await _load_services(db, [row[0]])
    return _row_to_order(row, services[row[0]])


async def list_orders(account_id: str, limit: Optional[int] = None) -> List[OrderRecord]:
    """Newest first."""
    q = "SELECT id, user_id, link, status, created_at, updated_at FROM orders WHERE user_id = ? ORDER BY id DESC"
    params: tuple = (str(account_id),)
    if limit:
        q += " LIMIT ?"
        params += (limit,)
    async with storage.connect() as db:
        cur = await db.execute(q, params)
        rows = await cur.fetchall()
        services = await _load_services(db, [r[0] for r in rows])
    return [_row_to_order(r, services[r[0]]) for r in rows]


async def save_status(order_id: int, status: OrderStatus, sub_statuses: Dict[str, Dict]) -> None:
    """Overwrite composite and per-external-id fields with freshly polled values."""
    async with storage.transaction() as db:
        await db.execute(
            "UPDATE orders SET status = ?, updated_at = ? WHERE id = ?",
            (status.value, _now(), order_id),
        )
        for external_id, data in sub_statuses.items():
            await db.execute(
                """UPDATE order_services SET status = ?, start_count = ?, remains = ?
                   WHERE order_id = ? AND external_id = ?""",
                (
                    data.get('status'),
                    _text_or_none(data.get('start_count')),
                    _text_or_none(data.get('remains')),
                    order_id,
                    external_id,
                ),
            )


def _text_or_none(value) -> Optional[str]:
    return None if value is None else str(value)
