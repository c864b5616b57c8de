"""
Sourcing Data Models

Vehicle descriptors, vendor quotes, per-line sourcing decisions and draft
purchase-order recommendations.
"""

from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from bmsex.models.estimate import SourceType


class DescriptorSource(str, Enum):
    """Where a vehicle descriptor came from"""
    REMOTE = "remote"
    LOCAL = "local"
    UNKNOWN = "unknown"


class VehicleDescriptor(BaseModel):
    """Decoded vehicle identity, tagged with its source and confidence"""
    vin: Optional[str] = None
    year: Optional[int] = None
    make: Optional[str] = None
    model: Optional[str] = None
    trim: Optional[str] = None
    manufacturer: Optional[str] = None
    body_class: Optional[str] = None
    engine: Optional[str] = None
    source: DescriptorSource = DescriptorSource.UNKNOWN
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    checksum_valid: bool = False
    notes: List[str] = Field(default_factory=list)

    @classmethod
    def unknown(cls, vin: Optional[str] = None, note: Optional[str] = None) -> 'VehicleDescriptor':
        return cls(vin=vin, notes=[note] if note else [])


class PartClassification(BaseModel):
    """Result of the table-driven part classifier"""
    part_type: SourceType
    category: str
    value_tier: str
    confidence: float
    safety_critical: bool = False
    matched_keyword: Optional[str] = None
    reason: str


class QuoteStatus(str, Enum):
    """Outcome of one vendor quote request"""
    OK = "ok"
    TIMEOUT = "timeout"
    ERROR = "error"
    UNAVAILABLE = "unavailable"


class VendorQuoteResult(BaseModel):
    """One vendor's answer (or failure to answer) for one damage line"""
    vendor_id: str
    vendor_name: Optional[str] = None
    line_ref: str
    status: QuoteStatus = QuoteStatus.OK
    price: Optional[Decimal] = None
    lead_time_days: Optional[int] = None
    availability: Optional[str] = None
    reliability_score: Optional[float] = None
    part_type: Optional[SourceType] = None
    part_number: Optional[str] = None
    latency_ms: int = 0
    error: Optional[str] = None

    @property
    def responded(self) -> bool:
        return self.status == QuoteStatus.OK and self.price is not None


class ScoredQuote(BaseModel):
    """A responding quote with its weighted score"""
    quote: VendorQuoteResult
    score: float
    breakdown: Dict[str, float] = Field(default_factory=dict)

    @property
    def vendor_id(self) -> str:
        return self.quote.vendor_id


class DecisionStatus(str, Enum):
    """Sourcing outcome for a single damage line"""
    SOURCED = "sourced"
    MANUAL_SOURCING = "manual_sourcing"
    NOT_SOURCED_TIMEOUT = "not_sourced_timeout"
    SKIPPED = "skipped"


class SourcingDecision(BaseModel):
    """Per-line sourcing decision"""
    line_ref: str
    line_number: int
    description: str = ""
    part_number: Optional[str] = None
    quantity: Decimal = Decimal('1')
    status: DecisionStatus
    classification: Optional[PartClassification] = None
    recommended_vendor: Optional[ScoredQuote] = None
    ranked_alternatives: List[ScoredQuote] = Field(default_factory=list)
    quotes: List[VendorQuoteResult] = Field(default_factory=list)
    reasoning_factors: Dict[str, Any] = Field(default_factory=dict)
    requires_approval: bool = False
    approval_reasons: List[str] = Field(default_factory=list)
    fallback_actions: List[str] = Field(default_factory=list)
    extended_price: Optional[Decimal] = None


class SourcingStatistics(BaseModel):
    total_lines: int = 0
    sourced: int = 0
    manual: int = 0
    timed_out: int = 0
    skipped: int = 0
    requires_approval: int = 0
    success_rate: float = 0.0
    processing_time_ms: int = 0


class SourcingRun(BaseModel):
    """Decisions for one document, in original line order"""
    vehicle: Optional[VehicleDescriptor] = None
    decisions: List[SourcingDecision] = Field(default_factory=list)
    statistics: SourcingStatistics = Field(default_factory=SourcingStatistics)


class PurchaseOrderLine(BaseModel):
    line_ref: str
    line_number: int
    part_number: Optional[str] = None
    description: str = ""
    quantity: Decimal
    unit_cost: Decimal
    markup_fraction: Decimal
    unit_price: Decimal
    extended_cost: Decimal
    extended_price: Decimal
    requires_approval: bool = False


class PurchaseOrderRecommendation(BaseModel):
    """Draft PO for one vendor; issuing it is someone else's job"""
    po_number: str
    document_id: Optional[str] = None
    vendor_id: str
    vendor_name: Optional[str] = None
    lines: List[PurchaseOrderLine] = Field(default_factory=list)
    subtotal: Decimal = Decimal('0.00')
    markup_applied: Decimal = Decimal('0.00')
    total_amount: Decimal = Decimal('0.00')
    approval_required: bool = False
    approval_reasons: List[str] = Field(default_factory=list)
    withheld_lines: List[str] = Field(default_factory=list)
