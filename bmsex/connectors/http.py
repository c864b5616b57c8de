"""
HTTP Vendor Connector

Requests quotes from a vendor's JSON quote API via POST. Supports custom
headers and bearer/basic/api-key authentication. The request timeout is
the smaller of the vendor's configured timeout and the time left before
the quote deadline.

Expected response body:
    {"price": 280.00, "lead_time_days": 5, "availability": "in_stock",
     "part_type": "Aftermarket", "part_number": "..."}

A 404, or a body without a price, means the vendor does not stock the
part; it is recorded as unavailable rather than as an error.
"""

import base64
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import httpx

from bmsex.connectors.base import QuoteRequest, VendorConfig, VendorConnector
from bmsex.exceptions import VendorQueryError, VendorTimeoutError
from bmsex.models.estimate import SourceType
from bmsex.models.sourcing import QuoteStatus, VendorQuoteResult

logger = logging.getLogger(__name__)


@dataclass
class HttpVendorConfig(VendorConfig):
    """HTTP vendor configuration"""
    # Endpoint
    url: str = ""

    # Headers
    headers: Dict[str, str] = field(default_factory=dict)

    # Authentication
    auth_type: Optional[str] = None  # "basic", "bearer", "api_key"
    auth_credentials: Optional[Dict[str, str]] = None

    # Request options
    verify_ssl: bool = True


class HttpVendorConnector(VendorConnector):
    """
    Connector for vendor quote APIs.

    Usage:
        config = HttpVendorConfig(
            vendor_id='partsco',
            url='https://api.partsco.example/quotes',
            auth_type='bearer',
            auth_credentials={'token': '...'}
        )
        connector = HttpVendorConnector(config)
        result = await connector.quote(request)
    """

    def __init__(self, config: HttpVendorConfig, client: Optional[httpx.AsyncClient] = None):
        super().__init__(config)
        self.http_config = config
        self._client = client

    @property
    def connector_type(self) -> str:
        return "HTTP"

    async def quote(self, request: QuoteRequest) -> VendorQuoteResult:
        timeout = request.remaining()
        if self.http_config.timeout_seconds:
            timeout = min(timeout, self.http_config.timeout_seconds)
        if timeout <= 0:
            raise VendorTimeoutError(self.vendor_id, "deadline already passed")

        start_time = time.monotonic()
        try:
            response = await self._post(request.to_payload(), timeout)
        except httpx.TimeoutException as e:
            raise VendorTimeoutError(self.vendor_id, f"no answer within {timeout:.2f}s") from e
        except httpx.HTTPError as e:
            raise VendorQueryError(self.vendor_id, f"request failed: {e}") from e

        latency_ms = int((time.monotonic() - start_time) * 1000)

        if response.status_code == 404:
            return self._result(request, status=QuoteStatus.UNAVAILABLE, latency_ms=latency_ms)
        if not 200 <= response.status_code < 300:
            raise VendorQueryError(self.vendor_id, f"HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise VendorQueryError(self.vendor_id, "response is not JSON") from e

        return self._parse_quote(request, data, latency_ms)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _post(self, payload: Dict[str, Any], timeout: float) -> httpx.Response:
        headers = {
            'Content-Type': 'application/json',
            **self.http_config.headers,
            **self._get_auth_headers(),
        }
        if self._client is not None:
            return await self._client.post(self.http_config.url, json=payload, headers=headers, timeout=timeout)
        async with httpx.AsyncClient(timeout=timeout, verify=self.http_config.verify_ssl) as client:
            return await client.post(self.http_config.url, json=payload, headers=headers)

    def _get_auth_headers(self) -> Dict[str, str]:
        """Get authentication headers"""
        auth_type = self.http_config.auth_type
        credentials = self.http_config.auth_credentials or {}

        if auth_type == 'bearer':
            return {'Authorization': f"Bearer {credentials.get('token', '')}"}

        elif auth_type == 'basic':
            username = credentials.get('username', '')
            password = credentials.get('password', '')
            encoded = base64.b64encode(f'{username}:{password}'.encode()).decode()
            return {'Authorization': f'Basic {encoded}'}

        elif auth_type == 'api_key':
            header = credentials.get('header', 'X-API-Key')
            return {header: credentials.get('key', '')}

        return {}

    def _parse_quote(self, request: QuoteRequest, data: Dict[str, Any], latency_ms: int) -> VendorQuoteResult:
        if data.get('price') is None:
            return self._result(
                request,
                status=QuoteStatus.UNAVAILABLE,
                availability=data.get('availability'),
                latency_ms=latency_ms,
            )

        try:
            price = Decimal(str(data['price']))
        except InvalidOperation as e:
            raise VendorQueryError(self.vendor_id, f"invalid price {data['price']!r}") from e

        part_type = None
        if data.get('part_type'):
            try:
                part_type = SourceType(data['part_type'])
            except ValueError:
                logger.debug(f"{self.vendor_id} returned unknown part type {data['part_type']!r}")

        lead_time = data.get('lead_time_days')
        return self._result(
            request,
            price=price,
            lead_time_days=int(lead_time) if lead_time is not None else None,
            availability=data.get('availability'),
            part_type=part_type,
            part_number=data.get('part_number') or request.part_number,
            latency_ms=latency_ms,
        )
