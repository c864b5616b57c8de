"""
Pipeline Options

The explicit configuration surface for one document's processing run.
Defaults are read from BMSEXConfig so a deployment can change them in
YAML; callers may override any field per request.
"""

from decimal import Decimal
from typing import Any, List, Optional

from pydantic import BaseModel, Field, field_validator

from bmsex.config.bmsex_config import BMSEXConfig


class PipelineOptions(BaseModel):
    """Per-document processing options"""
    enable_automated_sourcing: bool = True
    enhance_with_vin_decoding: bool = True
    generate_auto_po: bool = False
    per_vendor_timeout_ms: int = Field(2000, gt=0)
    document_processing_budget_ms: int = Field(30000, gt=0)
    approval_threshold_amount: Decimal = Field(Decimal('1000'), ge=0)
    base_markup_fraction: Decimal = Field(Decimal('0.25'), ge=0)
    preferred_vendor_allow_list: List[str] = Field(default_factory=list)
    pause_on_error: bool = False

    @field_validator('preferred_vendor_allow_list', mode='before')
    @classmethod
    def split_allow_list(cls, v: Any) -> List[str]:
        """Accept a comma separated string as well as a list"""
        if v is None:
            return []
        if isinstance(v, str):
            return [item.strip() for item in v.split(',') if item.strip()]
        return list(v)

    @classmethod
    def from_config(cls, config: Optional[BMSEXConfig] = None, **overrides: Any) -> 'PipelineOptions':
        """Build options from the ``pipeline`` config section plus overrides"""
        config = config or BMSEXConfig()
        values = dict(config.get('pipeline', {}) or {})
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    @property
    def per_vendor_timeout(self) -> float:
        return self.per_vendor_timeout_ms / 1000.0

    @property
    def document_budget(self) -> float:
        return self.document_processing_budget_ms / 1000.0
