"""
BMSEX Connectors

Outbound collaborators of the sourcing pipeline:
- Vendor quote providers (one capability interface, many backends)
- The remote VIN decode provider

Available Connectors:
- HTTP: JSON quote APIs
- Static: in-memory price lists for local runs and tests
- NHTSA: vPIC VIN decoding
"""

from .base import QuoteRequest, VendorConfig, VendorConnector
from .http import HttpVendorConfig, HttpVendorConnector
from .nhtsa import NHTSAVinProvider, RemoteVinProvider
from .registry import VendorRegistry, build_connector
from .static import CatalogEntry, StaticCatalogConfig, StaticCatalogConnector

__all__ = [
    # Base
    'QuoteRequest',
    'VendorConfig',
    'VendorConnector',

    # Vendor connectors
    'HttpVendorConfig',
    'HttpVendorConnector',
    'CatalogEntry',
    'StaticCatalogConfig',
    'StaticCatalogConnector',
    'VendorRegistry',
    'build_connector',

    # VIN
    'NHTSAVinProvider',
    'RemoteVinProvider',
]
