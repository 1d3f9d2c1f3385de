"""Detailed analysis route: gate, external evaluation, then bookkeeping."""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from interview_billing.core.auth import authenticated_user_id
from interview_billing.features.evaluation.client import EvaluationClient
from interview_billing.features.usage.service import enforce_usage, track_usage_safely
from interview_billing.models.usage import UsageType

router = APIRouter(prefix="/api/analysis", tags=["analysis"])


class DetailedAnalysisRequest(BaseModel):
    session_id: str
    transcript: Any
    options: Dict[str, Any] = Field(default_factory=dict)


class DetailedAnalysisResponse(BaseModel):
    analysis: Dict[str, Any]
    tracked: bool
    cached: bool = False
    warning: Optional[str] = None


def get_evaluation_client(request: Request) -> EvaluationClient:
    return request.app.state.evaluation_client


@router.post("/detailed", response_model=DetailedAnalysisResponse)
async def detailed_analysis(
    request: DetailedAnalysisRequest,
    user_id: str = Depends(authenticated_user_id),
    client: EvaluationClient = Depends(get_evaluation_client),
):
    """A result already held for this caller's session is returned without a charge."""
    cached = client.cached_detailed_analysis(request.session_id, owner=user_id)
    if cached is not None:
        return DetailedAnalysisResponse(analysis=cached, tracked=False, cached=True)

    await run_in_threadpool(enforce_usage, user_id, UsageType.DETAILED_ANALYSIS_PER_MONTH, 1)
    analysis = await client.detailed_analysis(
        request.session_id, request.transcript, options=request.options, owner=user_id
    )
    tracked = await run_in_threadpool(track_usage_safely, user_id, UsageType.DETAILED_ANALYSIS_PER_MONTH, 1)
    warning = None if tracked else "Analysis completed but usage could not be recorded"
    return DetailedAnalysisResponse(analysis=analysis, tracked=tracked, warning=warning)
