"""
Estimate Import Pipeline

End-to-end pipeline for one BMS estimate:
parse -> validate -> vin -> source -> po -> persist

VIN decoding, sourcing and PO drafting only run when enabled in the
PipelineOptions and, with ``validate_first``, only for documents without
critical validation errors. Parse failures and persistence failures end
the run; everything else is contained in the stage that produced it.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from bmsex.config.bmsex_config import BMSEXConfig
from bmsex.connectors.registry import VendorRegistry
from bmsex.db.repository import RecordStore
from bmsex.models.estimate import EstimateDocument, ValidationResult
from bmsex.models.options import PipelineOptions
from bmsex.models.results import ImportResult
from bmsex.models.sourcing import (
    DescriptorSource,
    PurchaseOrderRecommendation,
    SourcingRun,
    VehicleDescriptor,
)
from bmsex.processors.base import BaseProcessor, EstimateUpload, ProcessingResult
from bmsex.processors.bms.parser import BMSParser
from bmsex.processors.bms.validator import EstimateValidator
from bmsex.services.vin_service import VINDecoder
from bmsex.sourcing.engine import VendorSourcingEngine
from bmsex.sourcing.purchase_orders import PurchaseOrderGenerator

logger = logging.getLogger(__name__)


class PipelineStage(str, Enum):
    """Pipeline processing stages"""
    PARSE = "parse"
    VALIDATE = "validate"
    VIN = "vin"
    SOURCE = "source"
    PO = "po"
    PERSIST = "persist"
    COMPLETE = "complete"


@dataclass
class PipelineContext:
    """Context passed through pipeline stages"""
    upload: EstimateUpload
    options: PipelineOptions
    validate_first: bool = True

    # Stage results
    estimate: Optional[EstimateDocument] = None
    validation: Optional[ValidationResult] = None
    vehicle: Optional[VehicleDescriptor] = None
    sourcing: Optional[SourcingRun] = None
    purchase_orders: List[PurchaseOrderRecommendation] = field(default_factory=list)
    record_id: Optional[str] = None

    # Status tracking
    current_stage: PipelineStage = PipelineStage.PARSE
    skipped_stages: Dict[str, str] = field(default_factory=dict)

    # Timing
    stage_times: Dict[str, int] = field(default_factory=dict)
    total_time_ms: int = 0

    # Errors
    error: Optional[str] = None
    error_stage: Optional[PipelineStage] = None

    @property
    def document_id(self) -> Optional[str]:
        return self.estimate.document_id if self.estimate else None

    @property
    def automation_allowed(self) -> bool:
        """Sourcing steps run only for valid documents unless validate_first is off"""
        if not self.validate_first:
            return True
        return self.validation is not None and self.validation.is_valid

    def skip(self, stage: PipelineStage, reason: str) -> None:
        self.skipped_stages[stage.value] = reason

    def to_dict(self) -> Dict[str, Any]:
        return {
            'document_id': self.document_id,
            'filename': self.upload.filename,
            'current_stage': self.current_stage.value,
            'skipped_stages': self.skipped_stages,
            'stage_times': self.stage_times,
            'total_time_ms': self.total_time_ms,
            'error': self.error,
            'error_stage': self.error_stage.value if self.error_stage else None,
        }


class EstimatePipeline(BaseProcessor):
    """
    End-to-end estimate import pipeline.

    Features:
    - Single entry point for single-file intake and batch processing
    - Stages gated by PipelineOptions and validation outcome
    - Per-stage timing and stage callbacks
    - Optional persistence through a RecordStore

    Usage:
        pipeline = EstimatePipeline(vendors=VendorRegistry.from_config(), store=InMemoryRecordStore())
        result = await pipeline.process(EstimateUpload(content=xml, filename='est.xml'))
        if result.success:
            import_result = result.content
    """

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        parser: Optional[BMSParser] = None,
        validator: Optional[EstimateValidator] = None,
        vin_decoder: Optional[VINDecoder] = None,
        vendors: Optional[VendorRegistry] = None,
        engine: Optional[VendorSourcingEngine] = None,
        po_generator: Optional[PurchaseOrderGenerator] = None,
        store: Optional[RecordStore] = None,
        bmsex_config: Optional[BMSEXConfig] = None
    ):
        super().__init__(config)
        self.bmsex_config = bmsex_config or BMSEXConfig()
        self.parser = parser or BMSParser(self.config.get('parser'))
        self.validator = validator or EstimateValidator(self.config.get('validator'))
        self.vendors = vendors if vendors is not None else (engine.vendors if engine else VendorRegistry())
        self.store = store

        # Stage collaborators (lazy loaded)
        self._vin_decoder = vin_decoder
        self._engine = engine
        self._po_generator = po_generator

        # Callbacks
        self._stage_callbacks: Dict[PipelineStage, List[Callable[[PipelineContext], None]]] = {}

    @property
    def vin_decoder(self) -> VINDecoder:
        if self._vin_decoder is None:
            self._vin_decoder = VINDecoder(config=self.bmsex_config)
        return self._vin_decoder

    @property
    def engine(self) -> VendorSourcingEngine:
        if self._engine is None:
            self._engine = VendorSourcingEngine(self.vendors, config=self.bmsex_config)
        return self._engine

    @property
    def po_generator(self) -> PurchaseOrderGenerator:
        if self._po_generator is None:
            self._po_generator = PurchaseOrderGenerator(vendors=self.vendors, config=self.bmsex_config)
        return self._po_generator

    def on_stage(self, stage: PipelineStage, callback: Callable[[PipelineContext], None]) -> None:
        """Register a callback run after a stage completes"""
        self._stage_callbacks.setdefault(stage, []).append(callback)

    def can_process(self, document: EstimateUpload) -> bool:
        return self.parser.can_process(document)

    async def process(
        self,
        document: EstimateUpload,
        options: Optional[PipelineOptions] = None,
        validate_first: bool = True
    ) -> ProcessingResult:
        """
        Import one estimate through the complete pipeline.

        Args:
            document: Raw upload
            options: Per-document options; defaults come from configuration
            validate_first: Skip VIN/sourcing/PO for documents with critical errors

        Returns:
            ProcessingResult whose content is an ImportResult
        """
        start_time = time.monotonic()
        ctx = PipelineContext(
            upload=document,
            options=options or PipelineOptions.from_config(self.bmsex_config),
            validate_first=validate_first,
        )

        try:
            await self._run_stage(ctx, PipelineStage.PARSE, self._stage_parse)
            await self._run_stage(ctx, PipelineStage.VALIDATE, self._stage_validate)
            await self._run_stage(ctx, PipelineStage.VIN, self._stage_vin)
            await self._run_stage(ctx, PipelineStage.SOURCE, self._stage_source)
            await self._run_stage(ctx, PipelineStage.PO, self._stage_po)
            await self._run_stage(ctx, PipelineStage.PERSIST, self._stage_persist)
        except Exception as e:
            ctx.total_time_ms = int((time.monotonic() - start_time) * 1000)
            logger.warning(
                f"Pipeline failed at {ctx.current_stage.value} for "
                f"{document.filename or ctx.document_id or 'document'}: {e}"
            )
            return ProcessingResult(
                success=False,
                error=str(e),
                exception=e,
                metadata=ctx.to_dict()
            )

        ctx.current_stage = PipelineStage.COMPLETE
        ctx.total_time_ms = int((time.monotonic() - start_time) * 1000)
        result = ImportResult(
            document_id=ctx.estimate.document_id,
            record_id=ctx.record_id,
            filename=document.filename,
            claim_number=ctx.estimate.claim_number,
            estimate_format=ctx.estimate.estimate_format,
            parse_status=ctx.estimate.parse_status,
            validation=ctx.validation,
            vehicle=ctx.vehicle,
            sourcing=ctx.sourcing,
            purchase_orders=ctx.purchase_orders,
            skipped_stages=ctx.skipped_stages,
            stage_times=ctx.stage_times,
            total_time_ms=ctx.total_time_ms,
        )
        logger.info(
            f"Imported {result.document_id} in {result.total_time_ms}ms "
            f"(valid={result.validation.is_valid}, purchase_orders={len(result.purchase_orders)})"
        )
        return ProcessingResult(success=True, content=result, metadata=ctx.to_dict())

    async def _run_stage(
        self,
        ctx: PipelineContext,
        stage: PipelineStage,
        stage_func: Callable
    ) -> None:
        """Run a pipeline stage with timing and error handling"""
        if ctx.error:
            return

        ctx.current_stage = stage
        start = time.monotonic()

        try:
            await stage_func(ctx)

            # Emit stage callbacks
            for callback in self._stage_callbacks.get(stage, []):
                try:
                    callback(ctx)
                except Exception as e:
                    logger.warning(f"Stage callback failed: {e}")

        except Exception as e:
            ctx.error = str(e)
            ctx.error_stage = stage
            raise

        finally:
            ctx.stage_times[stage.value] = int((time.monotonic() - start) * 1000)

    async def _stage_parse(self, ctx: PipelineContext) -> None:
        """Parse stage: raises ParseError/ResourceLimitError on broken input"""
        ctx.estimate = self.parser.parse(ctx.upload.content)

    async def _stage_validate(self, ctx: PipelineContext) -> None:
        ctx.validation = self.validator.validate(ctx.estimate)
        if not ctx.validation.is_valid:
            logger.info(
                f"{ctx.document_id} has {len(ctx.validation.errors)} critical validation error(s)"
            )

    async def _stage_vin(self, ctx: PipelineContext) -> None:
        """VIN stage: decode the VIN and fill gaps from the document"""
        if not ctx.options.enhance_with_vin_decoding:
            ctx.skip(PipelineStage.VIN, "VIN decoding disabled")
            ctx.vehicle = self._descriptor_from_document(ctx.estimate)
            return
        if not ctx.automation_allowed:
            ctx.skip(PipelineStage.VIN, "Document failed validation")
            return

        decoded = await self.vin_decoder.decode(ctx.estimate.vehicle.vin)
        ctx.vehicle = self._merge_document_vehicle(decoded, ctx.estimate)

    async def _stage_source(self, ctx: PipelineContext) -> None:
        if not ctx.options.enable_automated_sourcing:
            ctx.skip(PipelineStage.SOURCE, "Automated sourcing disabled")
            return
        if not ctx.automation_allowed:
            ctx.skip(PipelineStage.SOURCE, "Document failed validation")
            return
        if not ctx.estimate.part_lines:
            ctx.skip(PipelineStage.SOURCE, "No part lines")
            return
        if len(self.vendors) == 0:
            ctx.skip(PipelineStage.SOURCE, "No vendors configured")
            return

        vehicle = ctx.vehicle or self._descriptor_from_document(ctx.estimate)
        ctx.sourcing = await self.engine.source(ctx.estimate.damage_lines, vehicle, ctx.options)

    async def _stage_po(self, ctx: PipelineContext) -> None:
        if not ctx.options.generate_auto_po:
            ctx.skip(PipelineStage.PO, "Automatic PO generation disabled")
            return
        if ctx.sourcing is None:
            ctx.skip(PipelineStage.PO, "Nothing was sourced")
            return

        ctx.purchase_orders = self.po_generator.generate(
            ctx.sourcing.decisions,
            document_id=ctx.document_id,
            options=ctx.options,
        )

    async def _stage_persist(self, ctx: PipelineContext) -> None:
        """Persist stage: store the import record; failures end the run"""
        if self.store is None:
            ctx.skip(PipelineStage.PERSIST, "No record store configured")
            return
        ctx.record_id = self.store.save(self._record(ctx))

    def _record(self, ctx: PipelineContext) -> Dict[str, Any]:
        estimate = ctx.estimate
        validation = ctx.validation
        return {
            'document_id': estimate.document_id,
            'claim_number': estimate.claim_number,
            'vin': estimate.vehicle.vin,
            'filename': ctx.upload.filename,
            'content_hash': estimate.content_hash,
            'estimate_format': estimate.estimate_format.value,
            'parse_status': estimate.parse_status.value,
            'is_valid': validation.is_valid,
            'line_count': len(estimate.damage_lines),
            'parts_total': estimate.totals.parts_total,
            'summary': {
                'validation': {
                    'errors': [issue.code for issue in validation.errors],
                    'warning_count': len(validation.warnings),
                    'completeness': validation.summary.completeness,
                },
                'vehicle_source': ctx.vehicle.source.value if ctx.vehicle else None,
                'sourcing': ctx.sourcing.statistics.model_dump(mode='json') if ctx.sourcing else None,
                'purchase_orders': [po.po_number for po in ctx.purchase_orders],
                'skipped_stages': dict(ctx.skipped_stages),
            },
        }

    @staticmethod
    def _descriptor_from_document(estimate: EstimateDocument) -> VehicleDescriptor:
        vehicle = estimate.vehicle
        return VehicleDescriptor(
            vin=vehicle.vin,
            year=vehicle.year,
            make=vehicle.make,
            model=vehicle.model,
            trim=vehicle.trim,
            source=DescriptorSource.UNKNOWN,
        )

    @staticmethod
    def _merge_document_vehicle(decoded: VehicleDescriptor, estimate: EstimateDocument) -> VehicleDescriptor:
        vehicle = estimate.vehicle
        updates = {}
        for name in ('year', 'make', 'model', 'trim'):
            if getattr(decoded, name) is None and getattr(vehicle, name) is not None:
                updates[name] = getattr(vehicle, name)
        return decoded.model_copy(update=updates) if updates else decoded
