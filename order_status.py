"""On-demand status refresh of placed orders."""

import logging
from typing import Dict, Iterable, Optional

import orders
from errors import OrderNotFound
from orders import OrderRecord, OrderStatus

logger = logging.getLogger(__name__)

# Highest priority first; Success only applies when every sub-order succeeded
PRECEDENCE = (
    OrderStatus.ERROR,
    OrderStatus.PARTIAL,
    OrderStatus.PROCESSING,
    OrderStatus.IN_PROGRESS,
    OrderStatus.PENDING,
)

_ALIASES = {
    'pending': OrderStatus.PENDING,
    'processing': OrderStatus.PROCESSING,
    'partial': OrderStatus.PARTIAL,
    'in progress': OrderStatus.IN_PROGRESS,
    'inprogress': OrderStatus.IN_PROGRESS,
    'in_progress': OrderStatus.IN_PROGRESS,
    'error': OrderStatus.ERROR,
    'fail': OrderStatus.ERROR,
    'failed': OrderStatus.ERROR,
    'canceled': OrderStatus.ERROR,
    'cancelled': OrderStatus.ERROR,
    'success': OrderStatus.SUCCESS,
    'completed': OrderStatus.SUCCESS,
}


def normalize_status(raw) -> OrderStatus:
    """Map a provider status string onto OrderStatus; unknown values count as Pending."""
    return _ALIASES.get(str(raw or '').strip().lower(), OrderStatus.PENDING)


def composite_status(statuses: Iterable) -> OrderStatus:
    normalized = [normalize_status(s) for s in statuses]
    if not normalized:
        return OrderStatus.ERROR
    if all(s is OrderStatus.SUCCESS for s in normalized):
        return OrderStatus.SUCCESS
    for candidate in PRECEDENCE:
        if candidate in normalized:
            return candidate
    return OrderStatus.PENDING


async def refresh_order(api, order_id: int, account_id: Optional[str] = None) -> OrderRecord:
    """Poll every external sub-order and persist the composite status.

    Nothing is written unless all polls succeed, so a failed refresh never
    replaces the last known status with a partial view.
    """
    record = await orders.get_order(order_id)
    if record is None or (account_id is not None and record.account_id != str(account_id)):
        raise OrderNotFound(order_id)

    polled: Dict[str, Dict] = {}
    for placement in record.services:
        if not placement.external_id:
            continue
        polled[placement.external_id] = await api.get_status(placement.external_id)

    # A service that was never placed keeps the whole link in Error
    status = composite_status(
        polled[p.external_id].get('status') if p.external_id else OrderStatus.ERROR.value
        for p in record.services
    )
    await orders.save_status(record.id, status, polled)
    logger.info(f"Order #{record.id} refreshed: {status.value}")

    return await orders.get_order(record.id)
