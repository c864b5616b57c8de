"""
Vendor Registry

The set of vendor connectors available to the sourcing engine. Vendors
are added and removed here; the scoring algorithm never changes when
they do.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from bmsex.config.bmsex_config import BMSEXConfig
from bmsex.connectors.base import VendorConnector
from bmsex.connectors.http import HttpVendorConfig, HttpVendorConnector
from bmsex.connectors.static import CatalogEntry, StaticCatalogConfig, StaticCatalogConnector

logger = logging.getLogger(__name__)

_COMMON_FIELDS = (
    'name', 'code', 'preferred', 'reliability_score', 'timeout_seconds',
    'requests_per_minute', 'burst_size', 'enabled',
)


class VendorRegistry:
    """Registered vendor connectors, keyed by vendor id"""

    def __init__(self, connectors: Optional[Iterable[VendorConnector]] = None):
        self._connectors: Dict[str, VendorConnector] = {}
        for connector in connectors or []:
            self.register(connector)

    def register(self, connector: VendorConnector) -> None:
        if connector.vendor_id in self._connectors:
            logger.warning(f"Replacing registered vendor {connector.vendor_id}")
        self._connectors[connector.vendor_id] = connector

    def unregister(self, vendor_id: str) -> Optional[VendorConnector]:
        return self._connectors.pop(vendor_id, None)

    def get(self, vendor_id: str) -> Optional[VendorConnector]:
        return self._connectors.get(vendor_id)

    def active(self, allow_list: Optional[Iterable[str]] = None) -> List[VendorConnector]:
        """
        Enabled connectors in vendor-id order.

        Args:
            allow_list: When non-empty, only these vendor ids are returned
        """
        allowed = set(allow_list or [])
        return [
            connector for vendor_id, connector in sorted(self._connectors.items())
            if connector.config.enabled and (not allowed or vendor_id in allowed)
        ]

    async def close(self) -> None:
        for connector in self._connectors.values():
            await connector.close()

    def __len__(self) -> int:
        return len(self._connectors)

    def __contains__(self, vendor_id: str) -> bool:
        return vendor_id in self._connectors

    @classmethod
    def from_config(cls, config: Optional[BMSEXConfig] = None) -> 'VendorRegistry':
        """
        Build connectors from the ``vendors`` config list.

        Each entry has a ``type`` of ``http`` or ``static`` plus the fields of
        the matching config dataclass.
        """
        config = config or BMSEXConfig()
        registry = cls()
        for entry in config.get('vendors', []) or []:
            registry.register(build_connector(entry))
        logger.info(f"Loaded {len(registry)} vendor connector(s) from config")
        return registry


def build_connector(entry: Dict[str, Any]) -> VendorConnector:
    """Create one connector from a config mapping"""
    kind = (entry.get('type') or 'http').lower()
    common = {k: entry[k] for k in _COMMON_FIELDS if k in entry}
    vendor_id = entry['vendor_id']

    if kind == 'static':
        catalog = {
            key: CatalogEntry.from_dict(value) if isinstance(value, dict)
            else CatalogEntry(price=Decimal(str(value)))
            for key, value in (entry.get('catalog') or {}).items()
        }
        return StaticCatalogConnector(StaticCatalogConfig(
            vendor_id=vendor_id,
            catalog=catalog,
            latency_seconds=float(entry.get('latency_seconds', 0.0)),
            failure_message=entry.get('failure_message'),
            **common
        ))

    if kind == 'http':
        return HttpVendorConnector(HttpVendorConfig(
            vendor_id=vendor_id,
            url=entry['url'],
            headers=dict(entry.get('headers') or {}),
            auth_type=entry.get('auth_type'),
            auth_credentials=entry.get('auth_credentials'),
            verify_ssl=entry.get('verify_ssl', True),
            **common
        ))

    raise ValueError(f"Unknown vendor connector type: {kind}")
