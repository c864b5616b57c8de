from .connection import Base, Database
from .models import EstimateImportRecord
from .repository import InMemoryRecordStore, RecordStore, SQLAlchemyRecordStore

__all__ = [
    'Base',
    'Database',
    'EstimateImportRecord',
    'InMemoryRecordStore',
    'RecordStore',
    'SQLAlchemyRecordStore',
]
