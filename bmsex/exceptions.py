"""
BMSEX Exceptions

Exception hierarchy shared by the parser, sourcing engine, VIN decoder,
batch orchestrator and intake layer.

Business-rule violations are never raised; they are returned as
ValidationResult data. Exceptions here mark failures that end processing
of one vendor call, one document or one control request.
"""

from typing import Optional


class BMSEXError(Exception):
    """Base class for all BMSEX errors"""


class ParseError(BMSEXError):
    """Raised when a BMS document is malformed or has no recognised root element"""

    def __init__(self, message: str, line: Optional[int] = None):
        super().__init__(message)
        self.line = line


class ResourceLimitError(BMSEXError):
    """Raised when an input exceeds a configured resource limit"""

    def __init__(self, message: str, limit: Optional[int] = None, actual: Optional[int] = None):
        super().__init__(message)
        self.limit = limit
        self.actual = actual


class UnsupportedContentTypeError(BMSEXError):
    """Raised when intake receives something that is not XML"""


class VendorQueryError(BMSEXError):
    """Raised by a vendor connector when a quote request fails"""

    def __init__(self, vendor_id: str, message: str):
        super().__init__(f"{vendor_id}: {message}")
        self.vendor_id = vendor_id


class VendorTimeoutError(VendorQueryError):
    """Raised when a vendor does not answer before the request deadline"""


class VINDecodeError(BMSEXError):
    """Raised by a remote VIN provider; always recovered by the local fallback"""


class BatchControlError(BMSEXError):
    """Raised when a control action is not valid for the job's current state"""

    def __init__(self, job_id: str, action: str, status: str):
        super().__init__(f"Cannot {action} batch {job_id} while it is {status}")
        self.job_id = job_id
        self.action = action
        self.status = status


class JobNotFoundError(BMSEXError, KeyError):
    """Raised when a batch id is unknown to the registry"""

    def __str__(self) -> str:
        return f"Batch not found: {self.args[0]}" if self.args else "Batch not found"


class ErrorReportNotFoundError(BMSEXError, KeyError):
    """Raised when an error report id is unknown"""

    def __str__(self) -> str:
        return f"Error report not found: {self.args[0]}" if self.args else "Error report not found"


class DocumentImportError(BMSEXError):
    """Raised by intake when a document could not be imported

    ``report`` is the ErrorReport created for the failure; ``cause`` is the
    underlying exception when there was one.
    """

    def __init__(self, report, cause: Optional[BaseException] = None):
        super().__init__(report.analysis.user_message)
        self.report = report
        self.cause = cause
