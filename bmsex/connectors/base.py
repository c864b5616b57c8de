"""
Base Vendor Connector

Every parts vendor is an implementation of one capability:

    quote(request) -> VendorQuoteResult

The request carries the part, the decoded vehicle and an absolute
deadline. Connectors raise VendorTimeoutError or VendorQueryError when
they cannot answer; the sourcing engine records those per vendor and
never lets them fail a line.
"""

import logging
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional

from bmsex.jobs.rate_limiter import RateLimitConfig
from bmsex.models.estimate import SourceType
from bmsex.models.sourcing import QuoteStatus, VehicleDescriptor, VendorQuoteResult

logger = logging.getLogger(__name__)


@dataclass
class VendorConfig:
    """Base vendor configuration"""
    vendor_id: str
    name: Optional[str] = None

    # Short code used in draft PO numbers
    code: Optional[str] = None

    # Scoring inputs
    preferred: bool = False
    reliability_score: Optional[float] = None

    # Overrides the pipeline's per-vendor timeout when set
    timeout_seconds: Optional[float] = None

    # Outbound throttling
    requests_per_minute: Optional[int] = None
    burst_size: int = 10

    enabled: bool = True

    # Custom config
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def display_name(self) -> str:
        return self.name or self.vendor_id

    @property
    def po_code(self) -> str:
        code = re.sub(r'[^A-Za-z0-9]', '', self.code or self.vendor_id).upper()
        return code[:6] or 'VND'

    @property
    def rate_limit(self) -> Optional[RateLimitConfig]:
        if not self.requests_per_minute:
            return None
        return RateLimitConfig(requests_per_minute=self.requests_per_minute, burst_size=self.burst_size)


@dataclass
class QuoteRequest:
    """One part on one estimate, as sent to a vendor"""
    line_ref: str
    description: str
    part_number: Optional[str]
    quantity: Decimal
    part_type: SourceType
    category: str
    vehicle: Optional[VehicleDescriptor]

    # Absolute time.monotonic() value by which the answer is needed
    deadline: float

    def remaining(self) -> float:
        return max(0.0, self.deadline - time.monotonic())

    def cache_key(self, vendor_id: str) -> str:
        vehicle = self.vehicle or VehicleDescriptor()
        parts = (
            vendor_id,
            self.part_number or self.description.lower(),
            vehicle.year,
            (vehicle.make or '').lower(),
            (vehicle.model or '').lower(),
        )
        return '|'.join('' if p is None else str(p) for p in parts)

    def to_payload(self) -> Dict[str, Any]:
        vehicle = self.vehicle
        return {
            'line_ref': self.line_ref,
            'description': self.description,
            'part_number': self.part_number,
            'quantity': str(self.quantity),
            'part_type': self.part_type.value,
            'category': self.category,
            'vehicle': {
                'vin': vehicle.vin,
                'year': vehicle.year,
                'make': vehicle.make,
                'model': vehicle.model,
                'trim': vehicle.trim,
            } if vehicle else None,
        }


class VendorConnector(ABC):
    """
    Abstract base class for vendor quote providers.

    Subclasses must implement:
    - quote(): Price one part for one vehicle
    """

    def __init__(self, config: VendorConfig):
        self.config = config

    @property
    def vendor_id(self) -> str:
        return self.config.vendor_id

    @property
    def connector_type(self) -> str:
        return self.__class__.__name__

    @abstractmethod
    async def quote(self, request: QuoteRequest) -> VendorQuoteResult:
        """
        Request a quote.

        Args:
            request: Part, vehicle and deadline

        Returns:
            VendorQuoteResult

        Raises:
            VendorTimeoutError: If the vendor cannot answer before the deadline
            VendorQueryError: If the vendor call fails
        """
        pass

    async def close(self) -> None:
        """Release connector resources"""
        pass

    def _result(self, request: QuoteRequest, **values: Any) -> VendorQuoteResult:
        values.setdefault('reliability_score', self.config.reliability_score)
        values.setdefault('status', QuoteStatus.OK)
        return VendorQuoteResult(
            vendor_id=self.config.vendor_id,
            vendor_name=self.config.display_name,
            line_ref=request.line_ref,
            **values
        )
