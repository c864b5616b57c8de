from bmsex.models.estimate import (
    CustomerInfo,
    ClaimInfo,
    DamageLine,
    EstimateDocument,
    EstimateFormat,
    FieldStatus,
    FieldVerdict,
    IssueSeverity,
    LineType,
    ParseStatus,
    SourceType,
    ValidationIssue,
    ValidationResult,
    VehicleInfo,
)
from bmsex.models.options import PipelineOptions
from bmsex.models.results import ImportResult
from bmsex.models.sourcing import (
    DecisionStatus,
    DescriptorSource,
    PartClassification,
    PurchaseOrderRecommendation,
    QuoteStatus,
    ScoredQuote,
    SourcingDecision,
    SourcingRun,
    VehicleDescriptor,
    VendorQuoteResult,
)

__all__ = [
    'CustomerInfo',
    'ClaimInfo',
    'DamageLine',
    'EstimateDocument',
    'EstimateFormat',
    'FieldStatus',
    'FieldVerdict',
    'IssueSeverity',
    'LineType',
    'ParseStatus',
    'SourceType',
    'ValidationIssue',
    'ValidationResult',
    'VehicleInfo',
    'PipelineOptions',
    'ImportResult',
    'DecisionStatus',
    'DescriptorSource',
    'PartClassification',
    'PurchaseOrderRecommendation',
    'QuoteStatus',
    'ScoredQuote',
    'SourcingDecision',
    'SourcingRun',
    'VehicleDescriptor',
    'VendorQuoteResult',
]
