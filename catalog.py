"""Price and availability gate for the configured external services."""

import logging
from dataclasses import dataclass
from typing import Dict, List

from config import ServiceConfig
from errors import CatalogPriceExceeded, CatalogServiceUnavailable, ExternalApiError

logger = logging.getLogger(__name__)


@dataclass
class CatalogEntry:
    service_id: str
    price: float
    raw: Dict


async def validate_catalog(api, services: List[ServiceConfig]) -> Dict[str, CatalogEntry]:
    """Fetch the catalog once and fail closed on a missing or repriced service.

    Returns the matched catalog entries keyed by ``ServiceConfig.key``.
    """
    try:
        catalog = await api.get_services()
    except ExternalApiError as e:
        logger.error(f"Catalog fetch failed: {e}")
        raise CatalogServiceUnavailable() from e

    by_id = {str(entry.get('id')): entry for entry in catalog}
    matched: Dict[str, CatalogEntry] = {}
    for svc in services:
        entry = by_id.get(str(svc.service_id))
        if entry is None:
            logger.warning(f"Service {svc.service_id} ({svc.key}) missing from catalog")
            raise CatalogServiceUnavailable(svc.service_id)
        try:
            price = float(entry.get('price'))
        except (TypeError, ValueError):
            logger.warning(f"Service {svc.service_id} has unreadable price {entry.get('price')!r}")
            raise CatalogServiceUnavailable(svc.service_id)
        if price > svc.max_price:
            logger.warning(f"Service {svc.service_id} price {price} above ceiling {svc.max_price}")
            raise CatalogPriceExceeded(svc.service_id, price, svc.max_price)
        matched[svc.key] = CatalogEntry(service_id=str(svc.service_id), price=price, raw=entry)
    return matched
