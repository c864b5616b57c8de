"""
Estimate Intake Service

High-level entry point for getting estimates into the system.
Provides a clean API for:
- Single-file import through the estimate pipeline
- Batch submission to the batch registry
- Content-type and size checks that run before any parsing
"""

import logging
from pathlib import PurePath
from typing import Any, Dict, Iterable, List, Optional, Tuple

from bmsex.config.bmsex_config import BMSEXConfig
from bmsex.exceptions import DocumentImportError, ResourceLimitError, UnsupportedContentTypeError
from bmsex.jobs.registry import BatchRegistry
from bmsex.models.batch import BatchOptions
from bmsex.models.options import PipelineOptions
from bmsex.models.results import ImportResult
from bmsex.processors.base import EstimateUpload
from bmsex.processors.bms.pipeline import EstimatePipeline
from bmsex.services.error_service import ErrorReporter

logger = logging.getLogger(__name__)

IMPORT_OPERATION = 'estimate_import'
BATCH_OPERATION = 'batch_submit'

# (filename, content_type, content)
IntakeFile = Tuple[Optional[str], Optional[str], bytes]


class IntakeService:
    """
    Service for importing estimates.

    Usage:
        service = IntakeService()

        # Single document
        result = await service.import_document(data, filename='estimate.xml')

        # Batch
        job_id = await service.submit_batch([('a.xml', 'text/xml', data_a), ('b.xml', None, data_b)])
        snapshot = service.registry.get(job_id)
    """

    def __init__(
        self,
        pipeline: Optional[EstimatePipeline] = None,
        registry: Optional[BatchRegistry] = None,
        reporter: Optional[ErrorReporter] = None,
        config: Optional[BMSEXConfig] = None
    ):
        """
        Initialize the intake service.

        Args:
            pipeline: Pipeline for single-file imports; defaults to the registry's
            registry: Batch registry; one is created when omitted
            reporter: Error reporter shared with the registry
            config: Configuration
        """
        self.config = config or BMSEXConfig()
        self.reporter = reporter or (registry.reporter if registry else ErrorReporter(config=self.config))
        self.pipeline = pipeline or (registry.pipeline if registry else EstimatePipeline(bmsex_config=self.config))
        self.registry = registry or BatchRegistry(
            pipeline=self.pipeline, reporter=self.reporter, config=self.config
        )

        intake = self.config.get('intake', {}) or {}
        self.allowed_content_types = [t.lower() for t in intake.get('allowed_content_types', ['application/xml', 'text/xml'])]
        self.allowed_extensions = [e.lower() for e in intake.get('allowed_extensions', ['.xml'])]

    @property
    def max_bytes(self) -> int:
        return self.pipeline.parser.max_bytes

    def is_allowed_type(self, filename: Optional[str], content_type: Optional[str]) -> bool:
        if content_type:
            media_type = content_type.split(';', 1)[0].strip().lower()
            if media_type in self.allowed_content_types:
                return True
        if filename and PurePath(filename).suffix.lower() in self.allowed_extensions:
            return True
        return False

    def check_upload(self, filename: Optional[str], content_type: Optional[str], size: Optional[int]) -> None:
        """
        Reject an upload before parsing.

        Raises:
            UnsupportedContentTypeError: Neither the content type nor the filename says XML
            ResourceLimitError: The body is larger than the parser limit
        """
        if not self.is_allowed_type(filename, content_type):
            raise UnsupportedContentTypeError(
                f"Unsupported content type {content_type or 'unknown'} for {filename or 'upload'}; "
                f"expected {', '.join(self.allowed_content_types)} or a .xml file"
            )
        if size is not None and size > self.max_bytes:
            raise ResourceLimitError(
                f"Upload is {size} bytes; the limit is {self.max_bytes} bytes",
                limit=self.max_bytes,
                actual=size,
            )

    def screen_upload(
        self,
        filename: Optional[str],
        content_type: Optional[str],
        size: Optional[int],
        operation: str = IMPORT_OPERATION,
        user_id: Optional[str] = None
    ) -> None:
        """Run check_upload and report a rejection before re-raising it"""
        try:
            self.check_upload(filename, content_type, size)
        except (UnsupportedContentTypeError, ResourceLimitError) as e:
            self.reporter.report_error(e, {'file': filename, 'operation': operation, 'user': user_id})
            raise

    async def import_document(
        self,
        content: bytes,
        filename: Optional[str] = None,
        content_type: Optional[str] = None,
        options: Optional[PipelineOptions] = None,
        user_id: Optional[str] = None
    ) -> ImportResult:
        """
        Import a single estimate.

        Args:
            content: Raw XML bytes
            filename: Original filename, if known
            content_type: Declared content type, if known
            options: Pipeline options for this document
            user_id: Who submitted the document

        Returns:
            ImportResult

        Raises:
            UnsupportedContentTypeError / ResourceLimitError: Rejected before parsing
            DocumentImportError: The pipeline failed; carries the ErrorReport
        """
        context = {'file': filename, 'operation': IMPORT_OPERATION, 'user': user_id}
        self.screen_upload(filename, content_type, len(content), IMPORT_OPERATION, user_id)

        upload = EstimateUpload(content=content, filename=filename, content_type=content_type)
        result = await self.pipeline.process(upload, options=options)
        if not result.success:
            cause = result.exception
            report = self.reporter.report_error(cause or result.error or "Import failed", {
                **context,
                'document_id': result.metadata.get('document_id'),
                'stage': result.metadata.get('error_stage'),
            })
            raise DocumentImportError(report, cause)
        return result.content

    async def submit_batch(
        self,
        files: Iterable[IntakeFile],
        options: Optional[BatchOptions] = None
    ) -> str:
        """
        Check every file and submit them as one batch.

        The whole batch is rejected if any file fails the intake checks.

        Returns:
            The batch job id
        """
        uploads: List[EstimateUpload] = []
        for filename, content_type, content in files:
            self.screen_upload(
                filename, content_type, len(content), BATCH_OPERATION,
                options.user_id if options else None
            )
            uploads.append(EstimateUpload(content=content, filename=filename, content_type=content_type))

        job_id = await self.registry.submit(uploads, options)
        logger.info(f"Submitted batch {job_id} with {len(uploads)} file(s)")
        return job_id

    def get_stats(self) -> Dict[str, Any]:
        return {
            'batches': self.registry.global_statistics(),
            'errors': self.reporter.statistics(),
        }
