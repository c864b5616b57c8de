"""
Static Catalog Connector

In-memory price list behaving like a vendor. Used for local runs, demos
and tests; optional simulated latency and failure let it stand in for a
slow or broken backend.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional

from bmsex.connectors.base import QuoteRequest, VendorConfig, VendorConnector
from bmsex.exceptions import VendorQueryError, VendorTimeoutError
from bmsex.models.estimate import SourceType
from bmsex.models.sourcing import QuoteStatus, VendorQuoteResult
from bmsex.processors.bms.normalizer import normalize_part_number

logger = logging.getLogger(__name__)

WILDCARD = '*'


@dataclass
class CatalogEntry:
    """One priced offer"""
    price: Decimal
    lead_time_days: int = 3
    availability: str = "in_stock"
    part_type: Optional[SourceType] = None
    part_number: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CatalogEntry':
        part_type = data.get('part_type')
        return cls(
            price=Decimal(str(data['price'])),
            lead_time_days=int(data.get('lead_time_days', 3)),
            availability=data.get('availability', 'in_stock'),
            part_type=SourceType(part_type) if part_type else None,
            part_number=data.get('part_number'),
        )


@dataclass
class StaticCatalogConfig(VendorConfig):
    """Static catalog configuration"""
    # Keys are normalized part numbers, lower-cased descriptions or '*'
    catalog: Dict[str, CatalogEntry] = field(default_factory=dict)

    # Simulated backend behaviour
    latency_seconds: float = 0.0
    failure_message: Optional[str] = None


class StaticCatalogConnector(VendorConnector):
    """
    Vendor backed by a fixed catalog.

    Usage:
        connector = StaticCatalogConnector(StaticCatalogConfig(
            vendor_id='acme',
            reliability_score=0.9,
            catalog={'*': CatalogEntry(price=Decimal('300'), lead_time_days=2)}
        ))
    """

    def __init__(self, config: StaticCatalogConfig):
        super().__init__(config)
        self.catalog_config = config
        self.calls = 0

    @property
    def connector_type(self) -> str:
        return "STATIC"

    async def quote(self, request: QuoteRequest) -> VendorQuoteResult:
        self.calls += 1
        latency = self.catalog_config.latency_seconds
        if latency:
            remaining = request.remaining()
            if latency > remaining:
                # Wait out the deadline, then give up like a real backend would
                await asyncio.sleep(remaining)
                raise VendorTimeoutError(self.vendor_id, f"no answer within {remaining:.2f}s")
            await asyncio.sleep(latency)

        if self.catalog_config.failure_message:
            raise VendorQueryError(self.vendor_id, self.catalog_config.failure_message)

        entry = self._lookup(request)
        if entry is None:
            return self._result(request, status=QuoteStatus.UNAVAILABLE, availability="not_stocked")

        return self._result(
            request,
            price=entry.price,
            lead_time_days=entry.lead_time_days,
            availability=entry.availability,
            part_type=entry.part_type or request.part_type,
            part_number=entry.part_number or request.part_number,
            latency_ms=int(latency * 1000),
        )

    def _lookup(self, request: QuoteRequest) -> Optional[CatalogEntry]:
        catalog = self.catalog_config.catalog
        keys = (
            normalize_part_number(request.part_number),
            request.description.lower() if request.description else None,
            WILDCARD,
        )
        for key in keys:
            if key and key in catalog:
                return catalog[key]
        return None
