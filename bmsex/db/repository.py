"""
Import Record Stores

The pipeline's persistence step writes one EstimateImportRecord per
imported document. Two stores share one interface: an in-memory store for
tests and single-process use, and a SQLAlchemy store for SQLite/PostgreSQL.
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from sqlalchemy import desc, select

from .connection import Database
from .models import EstimateImportRecord

logger = logging.getLogger(__name__)


class RecordStore(ABC):
    """Interface for import record persistence"""

    @abstractmethod
    def save(self, data: Dict[str, Any]) -> str:
        """Persist one import record and return its id"""
        pass

    @abstractmethod
    def get(self, record_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def list(self, document_id: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        pass


def _record_to_dict(record: EstimateImportRecord) -> Dict[str, Any]:
    return {
        'id': record.id,
        'document_id': record.document_id,
        'claim_number': record.claim_number,
        'vin': record.vin,
        'filename': record.filename,
        'content_hash': record.content_hash,
        'estimate_format': record.estimate_format,
        'parse_status': record.parse_status,
        'is_valid': record.is_valid,
        'line_count': record.line_count,
        'parts_total': record.parts_total,
        'summary': record.summary,
        'error': record.error,
        'created_at': record.created_at,
    }


class InMemoryRecordStore(RecordStore):
    """Keeps records in a dict; used by tests and the CLI when no database is configured"""

    def __init__(self):
        self._records: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()
        self._counter = 0

    def save(self, data: Dict[str, Any]) -> str:
        with self._lock:
            self._counter += 1
            record_id = data.get('id') or f"imp_{self._counter:06d}"
            self._records[record_id] = {**data, 'id': record_id}
        return record_id

    def get(self, record_id: str) -> Optional[Dict[str, Any]]:
        record = self._records.get(record_id)
        return dict(record) if record else None

    def list(self, document_id: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        records = [
            dict(r) for r in self._records.values()
            if document_id is None or r.get('document_id') == document_id
        ]
        return list(reversed(records))[:limit]

    def __len__(self) -> int:
        return len(self._records)


class SQLAlchemyRecordStore(RecordStore):
    """Import records in a relational database"""

    def __init__(self, db: Database, create_tables: bool = True):
        self.db = db
        if create_tables:
            self.db.create_tables()

    def save(self, data: Dict[str, Any]) -> str:
        with self.db.transaction() as session:
            record = EstimateImportRecord(**data)
            session.add(record)
            session.flush()
            record_id = record.id
        logger.debug(f"Saved import record {record_id} for {data.get('document_id')}")
        return record_id

    def get(self, record_id: str) -> Optional[Dict[str, Any]]:
        with self.db.session() as session:
            record = session.get(EstimateImportRecord, record_id)
            return _record_to_dict(record) if record else None

    def list(self, document_id: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        with self.db.session() as session:
            query = select(EstimateImportRecord)
            if document_id is not None:
                query = query.where(EstimateImportRecord.document_id == document_id)
            query = query.order_by(desc(EstimateImportRecord.created_at)).limit(limit)
            return [_record_to_dict(r) for r in session.execute(query).scalars()]
