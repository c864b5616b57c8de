"""
Estimate Data Models with Pydantic Validation

Canonical, typed records produced by the BMS parser and consumed by the
validator, VIN decoder and sourcing engine. Nothing in these models carries
XML-specific residue: namespaces, attribute markers and text-node wrappers
are resolved by the parser before a record is built.
"""

from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, computed_field


class SourceType(str, Enum):
    """Part source type"""
    OEM = "OEM"
    AFTERMARKET = "Aftermarket"
    RECYCLED = "Recycled"
    REMANUFACTURED = "Remanufactured"
    UNKNOWN = "Unknown"


class LineType(str, Enum):
    """Damage line kind"""
    PART = "part"
    LABOR = "labor"
    MATERIAL = "material"
    OTHER = "other"


class ParseStatus(str, Enum):
    """Outcome of parsing a well-formed document"""
    PARSED = "parsed"
    PARTIAL = "partial"


class EstimateFormat(str, Enum):
    """Recognised document dialects, keyed by root element"""
    CIECA_BMS = "cieca_bms"
    BMS_ESTIMATE = "bms_estimate"
    SIMPLE_ESTIMATE = "simple_estimate"
    ESTIMATE_DATA = "estimate_data"


class Address(BaseModel):
    """Normalized postal address"""
    line1: Optional[str] = None
    line2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None


class CustomerInfo(BaseModel):
    """Vehicle owner / policy holder projection"""
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    company_name: Optional[str] = None
    phone: Optional[str] = None
    work_phone: Optional[str] = None
    mobile_phone: Optional[str] = None
    email: Optional[str] = None
    address: Optional[Address] = None

    @property
    def full_name(self) -> Optional[str]:
        parts = [p for p in (self.first_name, self.last_name) if p]
        if parts:
            return ' '.join(parts)
        return self.company_name


class VehicleInfo(BaseModel):
    """Vehicle projection used for sourcing and VIN enrichment"""
    vin: Optional[str] = None
    year: Optional[int] = None
    make: Optional[str] = None
    model: Optional[str] = None
    trim: Optional[str] = None
    body_style: Optional[str] = None
    license_plate: Optional[str] = None
    license_state: Optional[str] = None
    color: Optional[str] = None
    mileage: Optional[int] = None
    engine: Optional[str] = None
    transmission: Optional[str] = None
    drivetrain: Optional[str] = None


class ClaimInfo(BaseModel):
    """Insurance claim projection"""
    claim_number: Optional[str] = None
    policy_number: Optional[str] = None
    insurance_company: Optional[str] = None
    adjuster_name: Optional[str] = None
    adjuster_phone: Optional[str] = None
    adjuster_email: Optional[str] = None
    loss_date: Optional[str] = None
    deductible: Optional[Decimal] = None
    deductible_waived: bool = False


class DamageLine(BaseModel):
    """One itemized part, labor or material entry"""
    line_number: int
    line_type: LineType = LineType.PART
    description: str = ""
    part_number: Optional[str] = None
    oem_part_number: Optional[str] = None
    quantity: Decimal = Decimal('1')
    unit_cost: Optional[Decimal] = None
    labor_hours: Decimal = Decimal('0')
    labor_type: Optional[str] = None
    labor_operation: Optional[str] = None
    category: str = "general"
    source_type: SourceType = SourceType.UNKNOWN
    taxable: bool = False

    @property
    def line_ref(self) -> str:
        """Stable reference used to tie quotes and decisions back to the line"""
        return f"L{self.line_number}"

    @property
    def extended_cost(self) -> Optional[Decimal]:
        if self.unit_cost is None:
            return None
        return self.unit_cost * self.quantity


class EstimateTotals(BaseModel):
    """Document-level totals as stated by the estimating system"""
    parts_total: Optional[Decimal] = None
    labor_total: Optional[Decimal] = None
    materials_total: Optional[Decimal] = None
    tax_total: Optional[Decimal] = None
    gross_total: Optional[Decimal] = None
    net_total: Optional[Decimal] = None


class TaxDetails(BaseModel):
    """GST/PST breakdown taken from totals adjustments"""
    gst_amount: Optional[Decimal] = None
    pst_amount: Optional[Decimal] = None
    total_tax: Optional[Decimal] = None


class SpecialRequirements(BaseModel):
    """Repair steps that affect scheduling or sublet sourcing"""
    adas_calibration: bool = False
    pre_post_scan: bool = False
    wheel_alignment: bool = False


class EstimateDocument(BaseModel):
    """
    Parsed estimate record.

    Created once per upload and discarded when that upload's processing
    ends. Re-parsing the same bytes yields an equal record.
    """
    document_id: str
    claim_number: Optional[str] = None
    vendor_code: Optional[str] = None
    created_at: Optional[str] = None
    parse_status: ParseStatus = ParseStatus.PARSED
    estimate_format: EstimateFormat
    bms_version: Optional[str] = None
    currency: str = "USD"
    estimate_number: Optional[str] = None
    ro_number: Optional[str] = None
    content_hash: str

    customer: CustomerInfo = Field(default_factory=CustomerInfo)
    vehicle: VehicleInfo = Field(default_factory=VehicleInfo)
    claim: ClaimInfo = Field(default_factory=ClaimInfo)
    damage_lines: List[DamageLine] = Field(default_factory=list)
    totals: EstimateTotals = Field(default_factory=EstimateTotals)
    tax_details: TaxDetails = Field(default_factory=TaxDetails)
    special_requirements: SpecialRequirements = Field(default_factory=SpecialRequirements)

    # Raw text of money/quantity fields that could not be parsed, keyed by field path
    invalid_values: Dict[str, str] = Field(default_factory=dict)
    unknown_elements: List[str] = Field(default_factory=list)

    @property
    def part_lines(self) -> List[DamageLine]:
        return [line for line in self.damage_lines if line.line_type == LineType.PART]


class IssueSeverity(str, Enum):
    """Validation rule tier"""
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


class ValidationIssue(BaseModel):
    """Represents a single rule violation or hint"""
    model_config = ConfigDict(frozen=True)

    field: str
    message: str
    severity: IssueSeverity
    code: str


class FieldStatus(str, Enum):
    """Per-field verdict for diagnostic display"""
    VALID = "valid"
    WARNING = "warning"
    INVALID = "invalid"
    MISSING = "missing"


class FieldVerdict(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: FieldStatus
    message: Optional[str] = None


class ValidationSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    critical_count: int = 0
    warning_count: int = 0
    info_count: int = 0
    completeness: float = 0.0
    line_count: int = 0
    details: Dict[str, Any] = Field(default_factory=dict)


class ValidationResult(BaseModel):
    """
    Immutable outcome of validating one EstimateDocument.

    ``errors`` holds only critical issues, so ``is_valid`` is exactly
    ``len(errors) == 0``.
    """
    model_config = ConfigDict(frozen=True)

    document_id: str
    errors: Tuple[ValidationIssue, ...] = ()
    warnings: Tuple[ValidationIssue, ...] = ()
    infos: Tuple[ValidationIssue, ...] = ()
    field_validations: Dict[str, FieldVerdict] = Field(default_factory=dict)
    summary: ValidationSummary

    @computed_field
    @property
    def is_valid(self) -> bool:
        return len(self.errors) == 0

    def issues_for(self, field: str) -> List[ValidationIssue]:
        """All issues whose field path starts with ``field``"""
        return [
            issue for issue in (*self.errors, *self.warnings, *self.infos)
            if issue.field == field or issue.field.startswith(f"{field}.")
        ]
