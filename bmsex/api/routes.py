"""
HTTP API

FastAPI routes for estimate intake, batch control and error reports,
mounted under /api/v1/bms.
"""

import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, File, Form, HTTPException, Query, Request, UploadFile, status
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from bmsex.exceptions import (
    BatchControlError,
    DocumentImportError,
    ErrorReportNotFoundError,
    JobNotFoundError,
    ResourceLimitError,
    UnsupportedContentTypeError,
)
from bmsex.models.batch import BatchOptions
from bmsex.models.errors import ErrorCategory
from bmsex.models.options import PipelineOptions
from bmsex.services.intake_service import IMPORT_OPERATION, IntakeService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/bms")

IMPORT_FAILURE_STATUS = {
    ErrorCategory.PARSING: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCategory.VALIDATION: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCategory.RESOURCE_LIMIT: status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
    ErrorCategory.NETWORK: status.HTTP_502_BAD_GATEWAY,
    ErrorCategory.DATABASE: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorCategory.PERMISSION: status.HTTP_403_FORBIDDEN,
}


class ResolveRequest(BaseModel):
    resolution: Optional[str] = None
    resolved_by: Optional[str] = None


def get_intake(request: Request) -> IntakeService:
    return request.app.state.intake


def _error(status_code: int, code: str, detail: str):
    raise HTTPException(status_code=status_code, detail={"error": code, "detail": detail})


async def _read_limited(request: Request, limit: int) -> bytes:
    """Read the request body, failing as soon as it passes ``limit`` bytes"""
    declared = request.headers.get('content-length')
    if declared and declared.isdigit() and int(declared) > limit:
        raise ResourceLimitError(
            f"Upload is {declared} bytes; the limit is {limit} bytes", limit=limit, actual=int(declared)
        )
    chunks = []
    total = 0
    async for chunk in request.stream():
        total += len(chunk)
        if total > limit:
            raise ResourceLimitError(f"Upload exceeds the limit of {limit} bytes", limit=limit, actual=total)
        chunks.append(chunk)
    return b''.join(chunks)


def _pipeline_options(
    intake: IntakeService,
    enable_sourcing: Optional[bool],
    generate_po: Optional[bool],
    decode_vin: Optional[bool]
) -> PipelineOptions:
    return PipelineOptions.from_config(
        intake.config,
        enable_automated_sourcing=enable_sourcing,
        generate_auto_po=generate_po,
        enhance_with_vin_decoding=decode_vin,
    )


@router.post("/import")
async def import_estimate(
    request: Request,
    filename: Optional[str] = Query(None),
    enable_sourcing: Optional[bool] = Query(None),
    generate_po: Optional[bool] = Query(None),
    decode_vin: Optional[bool] = Query(None),
    user_id: Optional[str] = Query(None),
    intake: IntakeService = Depends(get_intake),
):
    """Import one estimate sent as the raw request body"""
    content_type = request.headers.get('content-type')
    try:
        # Type and declared size are checked before the body is read
        intake.screen_upload(filename, content_type, None, user_id=user_id)
        try:
            body = await _read_limited(request, intake.max_bytes)
        except ResourceLimitError as e:
            intake.reporter.report_error(e, {'file': filename, 'operation': IMPORT_OPERATION, 'user': user_id})
            raise
        result = await intake.import_document(
            body,
            filename=filename,
            content_type=content_type,
            options=_pipeline_options(intake, enable_sourcing, generate_po, decode_vin),
            user_id=user_id,
        )
    except UnsupportedContentTypeError as e:
        _error(status.HTTP_415_UNSUPPORTED_MEDIA_TYPE, "unsupported_media_type", str(e))
    except ResourceLimitError as e:
        _error(status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, "too_large", str(e))
    except DocumentImportError as e:
        report = e.report
        status_code = IMPORT_FAILURE_STATUS.get(report.analysis.category, status.HTTP_500_INTERNAL_SERVER_ERROR)
        raise HTTPException(status_code=status_code, detail=report.public_view())

    return {"success": True, **result.model_dump(mode='json')}


@router.post("/batch", status_code=status.HTTP_202_ACCEPTED)
async def submit_batch(
    files: List[UploadFile] = File(...),
    pause_on_error: Optional[bool] = Form(None),
    concurrency: Optional[int] = Form(None),
    max_retries: Optional[int] = Form(None),
    enable_sourcing: Optional[bool] = Form(None),
    generate_po: Optional[bool] = Form(None),
    user_id: Optional[str] = Form(None),
    intake: IntakeService = Depends(get_intake),
):
    """Submit multipart files as one batch"""
    items = []
    try:
        for upload in files:
            content = await upload.read(intake.max_bytes + 1)
            items.append((upload.filename, upload.content_type, content))
        options = BatchOptions.from_config(
            intake.config,
            pause_on_error=pause_on_error,
            concurrency=concurrency,
            max_retries=max_retries,
            user_id=user_id,
            pipeline=PipelineOptions.from_config(
                intake.config,
                enable_automated_sourcing=enable_sourcing,
                generate_auto_po=generate_po,
                pause_on_error=pause_on_error,
            ),
        )
        job_id = await intake.submit_batch(items, options)
    except UnsupportedContentTypeError as e:
        _error(status.HTTP_415_UNSUPPORTED_MEDIA_TYPE, "unsupported_media_type", str(e))
    except ResourceLimitError as e:
        _error(status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, "too_large", str(e))
    except ValueError as e:
        _error(status.HTTP_400_BAD_REQUEST, "invalid_batch", str(e))

    return {
        "accepted": True,
        "batch_id": job_id,
        "status_url": f"{router.prefix}/batch/{job_id}",
    }


@router.get("/batch")
async def list_batches(status_filter: Optional[str] = Query(None, alias="status"), intake: IntakeService = Depends(get_intake)):
    try:
        return {"batches": intake.registry.list_jobs(status_filter)}
    except ValueError as e:
        _error(status.HTTP_400_BAD_REQUEST, "invalid_filter", str(e))


@router.get("/batch/statistics")
async def batch_statistics(intake: IntakeService = Depends(get_intake)):
    return intake.registry.global_statistics()


@router.get("/batch/{job_id}")
async def get_batch(job_id: str, intake: IntakeService = Depends(get_intake)):
    return intake.registry.get(job_id)


@router.post("/batch/{job_id}/pause")
async def pause_batch(job_id: str, intake: IntakeService = Depends(get_intake)):
    return await intake.registry.pause(job_id)


@router.post("/batch/{job_id}/resume")
async def resume_batch(job_id: str, intake: IntakeService = Depends(get_intake)):
    return await intake.registry.resume(job_id)


@router.post("/batch/{job_id}/cancel")
async def cancel_batch(job_id: str, intake: IntakeService = Depends(get_intake)):
    return await intake.registry.cancel(job_id)


@router.get("/errors")
async def search_errors(
    severity: Optional[str] = Query(None),
    category: Optional[str] = Query(None),
    resolved: Optional[bool] = Query(None),
    operation: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=500),
    intake: IntakeService = Depends(get_intake),
):
    try:
        found = intake.reporter.search(
            severity=severity,
            category=category,
            resolved=resolved,
            operation=operation,
            page=page,
            page_size=page_size,
        )
    except ValueError as e:
        _error(status.HTTP_400_BAD_REQUEST, "invalid_filter", str(e))
    return {**found, "reports": [r.public_view() for r in found['reports']]}


@router.get("/errors/statistics")
async def error_statistics(intake: IntakeService = Depends(get_intake)):
    return intake.reporter.statistics()


@router.get("/errors/export")
async def export_errors(export_format: str = Query("json", alias="format"), intake: IntakeService = Depends(get_intake)):
    if export_format not in ("json", "csv"):
        _error(status.HTTP_400_BAD_REQUEST, "invalid_format", f"Unsupported export format: {export_format}")
    media_type = "text/csv" if export_format == "csv" else "application/json"
    return Response(
        content=intake.reporter.export(export_format),
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="error-reports.{export_format}"'},
    )


@router.post("/errors/{report_id}/resolve")
async def resolve_error(report_id: str, body: ResolveRequest, intake: IntakeService = Depends(get_intake)):
    report = intake.reporter.resolve(report_id, resolution=body.resolution, resolved_by=body.resolved_by)
    return report.public_view()


async def _not_found(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": {"error": "not_found", "detail": str(exc)}})


async def _conflict(request: Request, exc: BatchControlError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"detail": {"error": "invalid_transition", "detail": str(exc), "status": exc.status}},
    )


def create_app(intake: Optional[IntakeService] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        intake: Intake service to serve; a default one is built when omitted
    """
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await app.state.intake.registry.shutdown()

    app = FastAPI(title="BMSEX", lifespan=lifespan)
    app.state.intake = intake or IntakeService()
    app.include_router(router)
    app.add_exception_handler(JobNotFoundError, _not_found)
    app.add_exception_handler(ErrorReportNotFoundError, _not_found)
    app.add_exception_handler(BatchControlError, _conflict)
    return app
