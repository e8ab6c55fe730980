# controller/document_controller.py
from fastapi import APIRouter, Depends, Query
from model.api import SearchHit, SearchResponse
from service.analysis_service import AnalysisService
from util.constants import InternalURIs
from controller.controller_dependencies import get_analysis_service, rate_limiter

document_router = APIRouter(dependencies=[Depends(rate_limiter)])


@document_router.get(InternalURIs.DOCUMENT_SEARCH, response_model=SearchResponse)
async def search_document(
    document_id: str,
    q: str = Query(..., min_length=1),
    k: int = Query(4, ge=1, le=20),
    service: AnalysisService = Depends(get_analysis_service),
) -> SearchResponse:
    method, hits = await service.search(document_id, q, k)
    return SearchResponse(
        documentId=document_id,
        query=q,
        method=method,
        hits=[SearchHit(chunk=i, score=score, text=text) for i, score, text in hits],
    )
