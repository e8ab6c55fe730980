# controller/analysis_controller.py
from typing import Optional
from fastapi import APIRouter, Depends, File, Form, UploadFile, status
from model.api import (
    CancelResponse,
    JobStatusResponse,
    SubmitAnalysisRequest,
    SubmitAnalysisResponse,
)
from service.analysis_service import AnalysisService
from util.constants import InternalURIs
from controller.controller_dependencies import (
    enforce_max_upload_size,
    get_analysis_service,
    rate_limiter,
)

analysis_router = APIRouter(dependencies=[Depends(rate_limiter)])


@analysis_router.post(
    InternalURIs.ANALYSES,
    response_model=SubmitAnalysisResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def submit_analysis(
    payload: SubmitAnalysisRequest,
    service: AnalysisService = Depends(get_analysis_service),
) -> SubmitAnalysisResponse:
    record = await service.submit_analysis(
        payload.documentRef,
        payload.contentKind,
        document_id=payload.documentId,
        course_id=payload.courseId,
        course_context=payload.courseContext,
        max_attempts=payload.maxAttempts,
        enable_ai_analysis=payload.enableAiAnalysis,
    )
    return SubmitAnalysisResponse(jobId=record.id, status=record.status, documentId=record.document_id)


@analysis_router.post(
    InternalURIs.ANALYSIS_UPLOAD,
    response_model=SubmitAnalysisResponse,
    status_code=status.HTTP_202_ACCEPTED,
    dependencies=[Depends(enforce_max_upload_size)],
)
async def upload_analysis(
    file: UploadFile = File(...),
    contentKind: Optional[str] = Form(None),
    documentId: Optional[str] = Form(None),
    courseId: Optional[str] = Form(None),
    courseContext: Optional[str] = Form(None),
    enableAiAnalysis: bool = Form(True),
    service: AnalysisService = Depends(get_analysis_service),
) -> SubmitAnalysisResponse:
    data = await file.read()
    record = await service.submit_upload(
        data,
        contentKind or file.content_type or "",
        document_id=documentId,
        course_id=courseId,
        course_context=courseContext,
        enable_ai_analysis=enableAiAnalysis,
    )
    return SubmitAnalysisResponse(jobId=record.id, status=record.status, documentId=record.document_id)


@analysis_router.get(InternalURIs.ANALYSIS_STATUS, response_model=JobStatusResponse)
async def get_analysis_status(
    job_id: str,
    service: AnalysisService = Depends(get_analysis_service),
) -> JobStatusResponse:
    record = await service.get_status(job_id)
    return JobStatusResponse.from_record(record)


@analysis_router.post(InternalURIs.ANALYSIS_CANCEL, response_model=CancelResponse)
async def cancel_analysis(
    job_id: str,
    service: AnalysisService = Depends(get_analysis_service),
) -> CancelResponse:
    cancelled = await service.cancel(job_id)
    return CancelResponse(jobId=job_id, cancelled=cancelled)
