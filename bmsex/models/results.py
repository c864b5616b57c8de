"""
Import Result Model

What the per-document pipeline hands back to intake, the batch
orchestrator and the HTTP layer.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from bmsex.models.estimate import EstimateFormat, ParseStatus, ValidationResult
from bmsex.models.sourcing import PurchaseOrderRecommendation, SourcingRun, VehicleDescriptor


class ImportResult(BaseModel):
    """Outcome of importing one estimate document"""
    document_id: str
    record_id: Optional[str] = None
    filename: Optional[str] = None
    claim_number: Optional[str] = None
    estimate_format: EstimateFormat
    parse_status: ParseStatus
    validation: ValidationResult
    vehicle: Optional[VehicleDescriptor] = None
    sourcing: Optional[SourcingRun] = None
    purchase_orders: List[PurchaseOrderRecommendation] = Field(default_factory=list)
    skipped_stages: Dict[str, str] = Field(default_factory=dict)
    stage_times: Dict[str, int] = Field(default_factory=dict)
    total_time_ms: int = 0

    def summary(self) -> Dict[str, Any]:
        """Compact view stored on batch file tasks"""
        return {
            'document_id': self.document_id,
            'record_id': self.record_id,
            'claim_number': self.claim_number,
            'parse_status': self.parse_status.value,
            'is_valid': self.validation.is_valid,
            'error_count': len(self.validation.errors),
            'warning_count': len(self.validation.warnings),
            'sourced_lines': self.sourcing.statistics.sourced if self.sourcing else 0,
            'purchase_orders': [po.po_number for po in self.purchase_orders],
            'total_time_ms': self.total_time_ms,
        }
