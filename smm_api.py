"""
Client for the SMM panel JSON API (single endpoint, ``action`` discriminator).

Replies are untrusted: ``data`` is only read when the reply carries
``status: true``. Every failure surfaces as ExternalApiError.
"""

import asyncio
import logging
from typing import Any, Dict, List

import aiohttp

from errors import ExternalApiError

logger = logging.getLogger(__name__)

# Retry settings for read-only actions
MAX_RETRIES = 3
RETRY_DELAY = 2  # seconds
TIMEOUT = 30  # seconds


class SmmPanelAPI:
    """Client for the SMM panel order API"""

    def __init__(self, api_url: str, api_key: str, secret_key: str, timeout: float = TIMEOUT):
        """
        Args:
            api_url: full endpoint URL, e.g. https://buzzerpanel.id/api/json.php
            api_key: panel API key
            secret_key: panel secret key
            timeout: upper bound per HTTP call, seconds
        """
        self.api_url = api_url
        self.api_key = api_key
        self.secret_key = secret_key
        self.timeout = timeout

    async def _send(self, payload: Dict[str, Any]) -> Any:
        """One HTTP round trip; returns the decoded JSON body."""
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(self.api_url, json=payload) as response:
                return await response.json(content_type=None)

    async def _call(self, action: str, params: Dict[str, Any], retries: int = 1) -> Any:
        """Execute ``action`` and return the ``data`` field of a successful reply."""
        payload = {'api_key': self.api_key, 'secret_key': self.secret_key, 'action': action}
        payload.update(params)

        for attempt in range(retries):
            try:
                body = await self._send(payload)
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError) as e:
                if attempt < retries - 1:
                    logger.warning(f"API '{action}' attempt {attempt + 1}/{retries} failed: {e}")
                    await asyncio.sleep(RETRY_DELAY * (attempt + 1))
                    continue
                logger.error(f"API '{action}' failed after {attempt + 1} attempt(s): {e}")
                raise ExternalApiError(action, f"{type(e).__name__}: {e}") from e

            if not isinstance(body, dict) or body.get('status') is not True:
                detail = _error_detail(body)
                logger.error(f"API '{action}' rejected: {detail}")
                raise ExternalApiError(action, detail)
            return body.get('data')

    async def get_services(self) -> List[Dict]:
        """
        Fetch the service catalog.

        Returns:
            List of services, e.g. [{"id": 24044, "price": 9000, ...}, ...]
        """
        data = await self._call('services', {}, retries=MAX_RETRIES)
        if not isinstance(data, list):
            raise ExternalApiError('services', "catalog is not a list")
        return [s for s in data if isinstance(s, dict)]

    async def place_order(self, service_id: str, link: str, quantity: int) -> str:
        """
        Place one order. Never retried: a repeated POST could double-spend.

        Returns:
            External order id as a string
        """
        data = await self._call('order', {'service': service_id, 'data': link, 'quantity': quantity})
        order_id = data.get('id') if isinstance(data, dict) else None
        if order_id in (None, ''):
            raise ExternalApiError('order', "reply has no order id")
        return str(order_id)

    async def get_status(self, order_id: str) -> Dict:
        """
        Query one order.

        Returns:
            {"status": "Processing", "start_count": ..., "remains": ...}
        """
        data = await self._call('status', {'id': order_id}, retries=MAX_RETRIES)
        if not isinstance(data, dict) or not data.get('status'):
            raise ExternalApiError('status', "reply has no status")
        return data


def _error_detail(body: Any) -> str:
    if isinstance(body, dict):
        data = body.get('data')
        if isinstance(data, dict) and data.get('msg'):
            return str(data['msg'])
        if isinstance(data, str) and data:
            return data
        return "status is not true"
    return "unexpected reply format"
