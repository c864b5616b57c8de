"""
Error Reporting Service

Turns raw failures into classified, sanitized ErrorReports.

Each report keeps the technical detail (exception type, message, traceback)
for audit and carries a separate user-facing message with remediation
suggestions. Reports are forwarded to an audit sink as they are created.
Resolution only happens through ``resolve``.
"""

import csv
import difflib
import io
import json
import logging
import threading
import traceback as tb
from abc import ABC, abstractmethod
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
from uuid import uuid4

import httpx
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError

from bmsex.config.bmsex_config import BMSEXConfig
from bmsex.exceptions import (
    BatchControlError,
    ErrorReportNotFoundError,
    ParseError,
    ResourceLimitError,
    UnsupportedContentTypeError,
    VendorQueryError,
    VINDecodeError,
)
from bmsex.models.errors import (
    ErrorAnalysis,
    ErrorCategory,
    ErrorContext,
    ErrorReport,
    ErrorResolution,
    ErrorSeverity,
    ResolutionStatus,
    TechnicalDetail,
)

logger = logging.getLogger(__name__)

CATEGORY_DEFAULTS: Dict[ErrorCategory, Tuple[ErrorSeverity, bool]] = {
    ErrorCategory.PARSING: (ErrorSeverity.HIGH, False),
    ErrorCategory.VALIDATION: (ErrorSeverity.MEDIUM, False),
    ErrorCategory.NETWORK: (ErrorSeverity.MEDIUM, True),
    ErrorCategory.DATABASE: (ErrorSeverity.HIGH, True),
    ErrorCategory.PERMISSION: (ErrorSeverity.HIGH, False),
    ErrorCategory.RESOURCE_LIMIT: (ErrorSeverity.HIGH, False),
    ErrorCategory.UNKNOWN: (ErrorSeverity.MEDIUM, False),
}

USER_MESSAGES = {
    ErrorCategory.PARSING: "The estimate file could not be read. It does not appear to be a well-formed BMS XML document.",
    ErrorCategory.VALIDATION: "The estimate was rejected because required information is missing or invalid.",
    ErrorCategory.NETWORK: "A remote service did not respond in time. The operation can be retried.",
    ErrorCategory.DATABASE: "The estimate could not be saved. Please try again shortly.",
    ErrorCategory.PERMISSION: "You do not have permission to perform this operation.",
    ErrorCategory.RESOURCE_LIMIT: "The upload exceeds the allowed size or processing limits.",
    ErrorCategory.UNKNOWN: "An unexpected error occurred while processing the estimate.",
}

SUGGESTIONS = {
    ErrorCategory.PARSING: [
        "Re-export the estimate from the estimating system as BMS XML",
        "Check that the file was not truncated during upload",
    ],
    ErrorCategory.VALIDATION: [
        "Review the validation details and correct the highlighted fields",
        "Make sure the VIN and claim number are present",
    ],
    ErrorCategory.NETWORK: [
        "Retry the import",
        "Check vendor and VIN service connectivity",
    ],
    ErrorCategory.DATABASE: [
        "Retry the import",
        "Contact support if the problem persists",
    ],
    ErrorCategory.PERMISSION: [
        "Ask an administrator for access",
    ],
    ErrorCategory.RESOURCE_LIMIT: [
        "Split the upload into smaller batches",
        "Check that the file is an estimate and not an archive or image",
    ],
    ErrorCategory.UNKNOWN: [
        "Retry the operation",
        "Contact support with the error id",
    ],
}

# Checked in order; the first match wins
KEYWORD_RULES: List[Tuple[ErrorCategory, Tuple[str, ...]]] = [
    (ErrorCategory.PARSING, ('xml', 'parse', 'syntax')),
    (ErrorCategory.VALIDATION, ('validation', 'required', 'missing')),
    (ErrorCategory.NETWORK, ('network', 'timeout', 'timed out', 'connection refused', 'fetch')),
    (ErrorCategory.DATABASE, ('database', 'sql', 'integrity')),
    (ErrorCategory.PERMISSION, ('permission', 'denied', 'forbidden', 'unauthorized')),
    (ErrorCategory.RESOURCE_LIMIT, ('size', 'limit', 'too large', 'memory', 'quota')),
]

CSV_HEADERS = [
    'ID', 'Timestamp', 'Category', 'Severity', 'Message', 'User Message',
    'File', 'Operation', 'User', 'Resolved', 'Resolved By',
]

RELATED_SIMILARITY = 0.7
RELATED_LIMIT = 5


def classify_exception(error: Union[BaseException, str]) -> ErrorCategory:
    """
    Map an exception (or bare message) to an ErrorCategory.

    Exception types are checked first, then message keywords.
    """
    if isinstance(error, BaseException):
        if isinstance(error, ParseError):
            return ErrorCategory.PARSING
        if isinstance(error, (ResourceLimitError, MemoryError)):
            return ErrorCategory.RESOURCE_LIMIT
        if isinstance(error, PermissionError):
            return ErrorCategory.PERMISSION
        if isinstance(error, httpx.HTTPStatusError):
            if error.response.status_code in (401, 403):
                return ErrorCategory.PERMISSION
            return ErrorCategory.NETWORK
        if isinstance(error, (TimeoutError, ConnectionError, httpx.TransportError,
                              VendorQueryError, VINDecodeError)):
            return ErrorCategory.NETWORK
        if isinstance(error, SQLAlchemyError):
            return ErrorCategory.DATABASE
        if isinstance(error, (PydanticValidationError, UnsupportedContentTypeError, BatchControlError)):
            return ErrorCategory.VALIDATION
        message = f"{type(error).__name__} {error}"
    else:
        message = str(error)

    lowered = message.lower()
    for category, keywords in KEYWORD_RULES:
        if any(keyword in lowered for keyword in keywords):
            return category
    return ErrorCategory.UNKNOWN


class AuditSink(ABC):
    """Receives every ErrorReport and progress event"""

    @abstractmethod
    def record_error(self, report: ErrorReport) -> None:
        pass

    def record_event(self, event: Dict[str, Any]) -> None:
        pass


class LoggingAuditSink(AuditSink):
    """Writes audit records to the ``bmsex.audit`` logger"""

    def __init__(self, logger_name: str = 'bmsex.audit'):
        self.audit_logger = logging.getLogger(logger_name)

    def record_error(self, report: ErrorReport) -> None:
        self.audit_logger.warning(json.dumps({
            'type': 'error_report',
            'id': report.id,
            'category': report.analysis.category.value,
            'severity': report.analysis.severity.value,
            'error_type': report.technical.error_type,
            'message': report.technical.message,
            'file': report.context.file,
            'operation': report.context.operation,
            'job_id': report.context.job_id,
        }))

    def record_event(self, event: Dict[str, Any]) -> None:
        self.audit_logger.info(json.dumps({'type': 'progress', **event}, default=str))


class ErrorReporter:
    """
    Classifies, stores and queries error reports.

    Usage:
        reporter = ErrorReporter()
        report = reporter.report_error(exc, {'file': 'a.xml', 'operation': 'import'})
        reporter.search(category='parsing', page=1, page_size=20)
        reporter.resolve(report.id, resolution='Re-exported', resolved_by='ops')
    """

    def __init__(
        self,
        audit_sink: Optional[AuditSink] = None,
        config: Optional[BMSEXConfig] = None,
        max_reports: Optional[int] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)
    ):
        config = config or BMSEXConfig()
        self.audit_sink = audit_sink or LoggingAuditSink()
        self.max_reports = max_reports or int(config.get('errors.max_reports', 10000))
        self.retention_days = int(config.get('errors.retention_days', 30))
        self._clock = clock
        self._reports: Dict[str, ErrorReport] = {}
        self._lock = threading.Lock()

    def report_error(
        self,
        raw_error: Union[BaseException, str],
        context: Optional[Union[ErrorContext, Dict[str, Any]]] = None
    ) -> ErrorReport:
        """
        Record a failure.

        Args:
            raw_error: The exception, or a plain message
            context: ErrorContext or a dict with file/operation/user/job_id/document_id

        Returns:
            The stored ErrorReport
        """
        if context is None:
            context = ErrorContext()
        elif isinstance(context, dict):
            known = {k: v for k, v in context.items() if k in ErrorContext.model_fields and k != 'extra'}
            extra = {k: v for k, v in context.items() if k not in ErrorContext.model_fields}
            extra.update(context.get('extra') or {})
            context = ErrorContext(**known, extra=extra)

        report = ErrorReport(
            id=f"err_{uuid4().hex[:16]}",
            timestamp=self._clock(),
            original_error=str(raw_error),
            technical=self._technical(raw_error),
            context=context,
            analysis=self.analyze(raw_error),
        )

        with self._lock:
            self._reports[report.id] = report
            overflow = len(self._reports) - self.max_reports
            if overflow > 0:
                oldest = sorted(self._reports.values(), key=lambda r: r.timestamp)[:overflow]
                for stale in oldest:
                    del self._reports[stale.id]

        logger.warning(
            f"Error {report.id} [{report.analysis.category.value}/{report.analysis.severity.value}] "
            f"in {context.operation or 'unknown operation'}: {report.technical.error_type}"
        )
        self._audit(report)
        return report

    def analyze(self, raw_error: Union[BaseException, str]) -> ErrorAnalysis:
        category = classify_exception(raw_error)
        severity, retryable = CATEGORY_DEFAULTS[category]
        if isinstance(raw_error, MemoryError):
            severity = ErrorSeverity.CRITICAL
        return ErrorAnalysis(
            category=category,
            severity=severity,
            user_message=USER_MESSAGES[category],
            suggestions=list(SUGGESTIONS[category]),
            retryable=retryable,
        )

    def get(self, report_id: str) -> ErrorReport:
        try:
            return self._reports[report_id]
        except KeyError:
            raise ErrorReportNotFoundError(report_id) from None

    def search(
        self,
        severity: Optional[Union[ErrorSeverity, str]] = None,
        category: Optional[Union[ErrorCategory, str]] = None,
        resolved: Optional[bool] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        operation: Optional[str] = None,
        page: int = 1,
        page_size: int = 50
    ) -> Dict[str, Any]:
        """
        Filter reports, newest first.

        Returns:
            Dict with ``reports`` (the page), ``total``, ``page``, ``page_size`` and ``pages``
        """
        severity = ErrorSeverity(severity) if severity is not None else None
        category = ErrorCategory(category) if category is not None else None
        page = max(1, page)
        page_size = max(1, page_size)

        matches = []
        for report in self._snapshot():
            if severity is not None and report.analysis.severity != severity:
                continue
            if category is not None and report.analysis.category != category:
                continue
            if resolved is not None and report.resolved != resolved:
                continue
            if start is not None and report.timestamp < start:
                continue
            if end is not None and report.timestamp > end:
                continue
            if operation is not None and report.context.operation != operation:
                continue
            matches.append(report)

        total = len(matches)
        offset = (page - 1) * page_size
        return {
            'reports': matches[offset:offset + page_size],
            'total': total,
            'page': page,
            'page_size': page_size,
            'pages': (total + page_size - 1) // page_size,
        }

    def resolve(self, report_id: str, resolution: Optional[str] = None, resolved_by: Optional[str] = None) -> ErrorReport:
        """Mark a report resolved. This is the only way a report changes after creation."""
        with self._lock:
            report = self._reports.get(report_id)
            if report is None:
                raise ErrorReportNotFoundError(report_id)
            updated = report.model_copy(update={'resolution': ErrorResolution(
                status=ResolutionStatus.RESOLVED,
                resolved_by=resolved_by,
                resolved_at=self._clock(),
                note=resolution,
            )})
            self._reports[report_id] = updated
        logger.info(f"Error {report_id} resolved by {resolved_by or 'unknown'}")
        return updated

    def statistics(self) -> Dict[str, Any]:
        reports = self._snapshot()
        total = len(reports)
        resolved = sum(1 for r in reports if r.resolved)
        by_category = Counter(r.analysis.category.value for r in reports)
        by_severity = Counter(r.analysis.severity.value for r in reports)
        return {
            'total': total,
            'resolved': resolved,
            'unresolved': total - resolved,
            'resolution_rate': round(resolved / total * 100, 2) if total else 0.0,
            'by_category': dict(by_category),
            'by_severity': dict(by_severity),
            'top_categories': [
                {'category': name, 'count': count, 'percentage': round(count / total * 100, 2)}
                for name, count in by_category.most_common(5)
            ],
            'recent': [r.public_view() for r in reports[:10]],
        }

    def related(self, report_id: str) -> List[ErrorReport]:
        """Reports in the same category with a similar message"""
        target = self.get(report_id)
        similar = []
        for report in self._snapshot():
            if report.id == target.id or report.analysis.category != target.analysis.category:
                continue
            ratio = difflib.SequenceMatcher(None, target.original_error, report.original_error).ratio()
            if ratio > RELATED_SIMILARITY:
                similar.append(report)
            if len(similar) >= RELATED_LIMIT:
                break
        return similar

    def export(self, format: str = 'json') -> str:
        """
        Export all reports.

        Tracebacks are left out of both formats.
        """
        reports = self._snapshot()
        if format == 'json':
            return json.dumps(
                [r.model_dump(mode='json', exclude={'technical': {'traceback'}}) for r in reports],
                indent=2
            )
        if format == 'csv':
            buffer = io.StringIO()
            writer = csv.writer(buffer)
            writer.writerow(CSV_HEADERS)
            for r in reports:
                writer.writerow([
                    r.id,
                    r.timestamp.isoformat(),
                    r.analysis.category.value,
                    r.analysis.severity.value,
                    r.original_error,
                    r.analysis.user_message,
                    r.context.file or '',
                    r.context.operation or '',
                    r.context.user or '',
                    'yes' if r.resolved else 'no',
                    r.resolution.resolved_by or '',
                ])
            return buffer.getvalue()
        raise ValueError(f"Unsupported export format: {format}")

    def cleanup(self, older_than_days: Optional[int] = None) -> int:
        """Drop reports older than the retention window; returns how many were removed"""
        days = self.retention_days if older_than_days is None else older_than_days
        cutoff = self._clock() - timedelta(days=days)
        with self._lock:
            stale = [rid for rid, r in self._reports.items() if r.timestamp < cutoff]
            for rid in stale:
                del self._reports[rid]
        if stale:
            logger.info(f"Removed {len(stale)} error report(s) older than {days} days")
        return len(stale)

    def __len__(self) -> int:
        return len(self._reports)

    def _snapshot(self) -> List[ErrorReport]:
        with self._lock:
            reports = list(self._reports.values())
        return sorted(reports, key=lambda r: r.timestamp, reverse=True)

    def _technical(self, raw_error: Union[BaseException, str]) -> TechnicalDetail:
        if isinstance(raw_error, BaseException):
            trace = None
            if raw_error.__traceback__ is not None:
                trace = ''.join(tb.format_exception(type(raw_error), raw_error, raw_error.__traceback__))
            return TechnicalDetail(error_type=type(raw_error).__name__, message=str(raw_error), traceback=trace)
        return TechnicalDetail(error_type='Message', message=str(raw_error))

    def _audit(self, report: ErrorReport) -> None:
        try:
            self.audit_sink.record_error(report)
        except Exception as e:
            logger.warning(f"Audit sink failed for {report.id}: {e}")
