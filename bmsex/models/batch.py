"""
Batch Job Models

Runtime records for multi-document import jobs. They are plain dataclasses
owned and mutated by the batch orchestrator; callers only ever see
``to_dict`` snapshots.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from bmsex.config.bmsex_config import BMSEXConfig
from bmsex.models.options import PipelineOptions


class JobStatus(str, Enum):
    """Batch job status"""
    CREATED = "created"
    QUEUED = "queued"
    PROCESSING = "processing"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.CANCELLED, JobStatus.ERROR)


class FileStatus(str, Enum):
    """File task status"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (FileStatus.COMPLETED, FileStatus.FAILED, FileStatus.SKIPPED)


STATUS_MESSAGES = {
    JobStatus.CREATED: "Batch created",
    JobStatus.QUEUED: "Waiting to start",
    JobStatus.PROCESSING: "Processing files",
    JobStatus.PAUSED: "Processing paused",
    JobStatus.COMPLETED: "All files processed",
    JobStatus.CANCELLED: "Batch cancelled",
    JobStatus.ERROR: "Batch stopped because of an error",
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class BatchOptions:
    """Batch-level options"""
    pause_on_error: bool = False
    validate_first: bool = True
    concurrency: int = 1
    max_retries: int = 0
    user_id: Optional[str] = None
    auto_start: bool = True
    pipeline: Optional[PipelineOptions] = None

    def __post_init__(self):
        # Either level may ask for a pause; the batch flag is the one the worker reads
        if self.pipeline is not None and self.pipeline.pause_on_error:
            self.pause_on_error = True

    @classmethod
    def from_config(cls, config: Optional[BMSEXConfig] = None, **overrides: Any) -> 'BatchOptions':
        """Build options from the ``batch`` and ``pipeline`` config sections plus overrides"""
        config = config or BMSEXConfig()
        batch = config.get('batch', {}) or {}
        values = {
            'pause_on_error': bool(config.get('pipeline.pause_on_error', False)),
            'validate_first': bool(batch.get('validate_first', True)),
            'concurrency': int(batch.get('concurrency', 1)),
            'max_retries': int(batch.get('max_retries', 0)),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'pause_on_error': self.pause_on_error,
            'validate_first': self.validate_first,
            'concurrency': self.concurrency,
            'max_retries': self.max_retries,
            'user_id': self.user_id,
            'auto_start': self.auto_start,
        }


@dataclass
class FileTask:
    """One document inside a batch"""
    filename: str
    index: int
    content: bytes = field(default=b'', repr=False)
    id: str = field(default_factory=lambda: f"fil_{uuid4().hex[:12]}")
    size: int = 0
    status: FileStatus = FileStatus.PENDING
    progress: int = 0
    error: Optional[str] = None
    error_report_id: Optional[str] = None
    attempts: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    result: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        if not self.size:
            self.size = len(self.content)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'filename': self.filename,
            'index': self.index,
            'size': self.size,
            'status': self.status.value,
            'progress': self.progress,
            'error': self.error,
            'error_report_id': self.error_report_id,
            'attempts': self.attempts,
            'started_at': _iso(self.started_at),
            'finished_at': _iso(self.finished_at),
            'result': self.result,
        }


@dataclass
class BatchStatistics:
    """Counters for one batch; processed_files is derived, never stored"""
    total_files: int = 0
    successful_files: int = 0
    failed_files: int = 0
    skipped_files: int = 0
    total_size: int = 0
    processed_size: int = 0
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    @property
    def processed_files(self) -> int:
        return self.successful_files + self.failed_files + self.skipped_files

    @property
    def progress(self) -> int:
        if not self.total_files:
            return 100
        return int(self.processed_files * 100 / self.total_files)

    @property
    def processing_time_ms(self) -> Optional[int]:
        if not self.start_time:
            return None
        end = self.end_time or _now()
        return int((end - self.start_time).total_seconds() * 1000)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total_files': self.total_files,
            'processed_files': self.processed_files,
            'successful_files': self.successful_files,
            'failed_files': self.failed_files,
            'skipped_files': self.skipped_files,
            'total_size': self.total_size,
            'processed_size': self.processed_size,
            'progress': self.progress,
            'start_time': _iso(self.start_time),
            'end_time': _iso(self.end_time),
            'processing_time_ms': self.processing_time_ms,
        }


@dataclass
class BatchJob:
    """A submitted group of documents processed under one lifecycle"""
    files: List[FileTask]
    options: BatchOptions = field(default_factory=BatchOptions)
    id: str = field(default_factory=lambda: f"bat_{uuid4().hex[:16]}")
    status: JobStatus = JobStatus.CREATED
    statistics: BatchStatistics = field(default_factory=BatchStatistics)
    created_at: datetime = field(default_factory=_now)
    queued_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    updated_at: datetime = field(default_factory=_now)
    error: Optional[str] = None

    def __post_init__(self):
        self.statistics.total_files = len(self.files)
        self.statistics.total_size = sum(f.size for f in self.files)

    @property
    def control_flags(self) -> Dict[str, bool]:
        return {
            'can_pause': self.status == JobStatus.PROCESSING,
            'can_resume': self.status == JobStatus.PAUSED,
            'can_cancel': self.status in (JobStatus.QUEUED, JobStatus.PROCESSING, JobStatus.PAUSED),
        }

    @property
    def pending_files(self) -> List[FileTask]:
        return [f for f in self.files if f.status == FileStatus.PENDING]

    def touch(self) -> None:
        self.updated_at = _now()

    def to_dict(self) -> Dict[str, Any]:
        """Point-in-time snapshot for status polling"""
        return {
            'id': self.id,
            'status': self.status.value,
            'message': STATUS_MESSAGES[self.status],
            'progress': self.statistics.progress,
            'statistics': self.statistics.to_dict(),
            'files': [f.to_dict() for f in sorted(self.files, key=lambda f: f.index)],
            'options': self.options.to_dict(),
            'control': self.control_flags,
            'error': self.error,
            'timestamps': {
                'created_at': _iso(self.created_at),
                'queued_at': _iso(self.queued_at),
                'started_at': _iso(self.started_at),
                'paused_at': _iso(self.paused_at),
                'finished_at': _iso(self.finished_at),
                'updated_at': _iso(self.updated_at),
            },
        }


@dataclass
class ProgressEvent:
    """Notification emitted on every job or file state transition"""
    job_id: str
    event: str
    status: str
    progress: int
    file_id: Optional[str] = None
    file_status: Optional[str] = None
    message: Optional[str] = None
    timestamp: datetime = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'job_id': self.job_id,
            'event': self.event,
            'status': self.status,
            'progress': self.progress,
            'file_id': self.file_id,
            'file_status': self.file_status,
            'message': self.message,
            'timestamp': self.timestamp.isoformat(),
        }
