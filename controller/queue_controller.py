# controller/queue_controller.py
from typing import Optional
from fastapi import APIRouter, Depends
from model.api import JobStatusResponse, QueueJobsResponse, QueueStatsResponse
from model.job import JobStatus
from service.analysis_service import AnalysisService
from util.constants import InternalURIs
from controller.controller_dependencies import get_analysis_service, rate_limiter

queue_router = APIRouter(dependencies=[Depends(rate_limiter)])


@queue_router.get(InternalURIs.QUEUE_STATS, response_model=QueueStatsResponse)
async def queue_stats(
    service: AnalysisService = Depends(get_analysis_service),
) -> QueueStatsResponse:
    return QueueStatsResponse(**service.queue_stats())


@queue_router.get(InternalURIs.QUEUE_JOBS, response_model=QueueJobsResponse)
async def queue_jobs(
    status: Optional[JobStatus] = None,
    service: AnalysisService = Depends(get_analysis_service),
) -> QueueJobsResponse:
    jobs = service.list_jobs(status)
    return QueueJobsResponse(jobs=[JobStatusResponse.from_record(j) for j in jobs])
