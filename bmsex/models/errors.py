"""
Error Report Models

An ErrorReport pairs the technical failure (kept for audit) with a
sanitized, user-facing analysis. Only ``public_view`` is meant for end
users.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ErrorCategory(str, Enum):
    PARSING = "parsing"
    VALIDATION = "validation"
    NETWORK = "network"
    DATABASE = "database"
    PERMISSION = "permission"
    RESOURCE_LIMIT = "resource-limit"
    UNKNOWN = "unknown"


class ErrorSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ResolutionStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"


class ErrorContext(BaseModel):
    """Where the failure happened"""
    file: Optional[str] = None
    operation: Optional[str] = None
    user: Optional[str] = None
    job_id: Optional[str] = None
    document_id: Optional[str] = None
    extra: Dict[str, Any] = Field(default_factory=dict)


class ErrorAnalysis(BaseModel):
    category: ErrorCategory
    severity: ErrorSeverity
    user_message: str
    suggestions: List[str] = Field(default_factory=list)
    retryable: bool = False


class TechnicalDetail(BaseModel):
    """Audit-only failure detail"""
    error_type: str
    message: str
    traceback: Optional[str] = None


class ErrorResolution(BaseModel):
    status: ResolutionStatus = ResolutionStatus.OPEN
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    note: Optional[str] = None


class ErrorReport(BaseModel):
    id: str
    timestamp: datetime
    original_error: str
    technical: TechnicalDetail
    context: ErrorContext = Field(default_factory=ErrorContext)
    analysis: ErrorAnalysis
    resolution: ErrorResolution = Field(default_factory=ErrorResolution)

    @property
    def resolved(self) -> bool:
        return self.resolution.status == ResolutionStatus.RESOLVED

    def public_view(self) -> Dict[str, Any]:
        """Report fields safe to show to end users"""
        return {
            'id': self.id,
            'timestamp': self.timestamp.isoformat(),
            'file': self.context.file,
            'operation': self.context.operation,
            'category': self.analysis.category.value,
            'severity': self.analysis.severity.value,
            'message': self.analysis.user_message,
            'suggestions': list(self.analysis.suggestions),
            'retryable': self.analysis.retryable,
            'resolved': self.resolved,
        }
