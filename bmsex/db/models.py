from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, Numeric, String, Text

from .connection import Base


class EstimateImportRecord(Base):
    """
    One imported estimate

    Stores the identifying fields and the outcome summary of a pipeline run.
    The full document is not stored; ``summary`` keeps the validation
    counts, sourcing statistics and purchase order numbers.
    """
    __tablename__ = 'estimate_import'

    id = Column(String(36), primary_key=True, default=lambda: f"imp_{uuid4().hex[:24]}")
    document_id = Column(String(255), nullable=False, index=True)
    claim_number = Column(String(100), nullable=True, index=True)
    vin = Column(String(17), nullable=True, index=True)
    filename = Column(String(500), nullable=True)
    content_hash = Column(String(64), nullable=False)
    estimate_format = Column(String(20), nullable=False)
    parse_status = Column(String(20), nullable=False)
    is_valid = Column(Boolean, nullable=False, default=False)
    line_count = Column(Integer, nullable=False, default=0)
    parts_total = Column(Numeric(12, 2), nullable=True)
    summary = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=lambda: datetime.now(timezone.utc))

    def __repr__(self):
        return f"<EstimateImportRecord(id='{self.id}', document_id='{self.document_id}', valid={self.is_valid})>"
