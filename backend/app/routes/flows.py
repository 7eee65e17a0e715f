# /app/routes/flows.py

import logging
from fastapi import APIRouter, Request

from app.config.settings import settings
from app.models.api import APIResponse
from app.models.flow import FlowData
from app.utils.metrics import flow_analysis_counter
from app.utils.rate_limiter import limiter
from app.workflows.analysis import analyze_flow

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/flows",
    tags=["Flows"],
)


@router.post("/analyze", response_model=APIResponse)
@limiter.limit("120/minute")
async def analyze(request: Request, flow: FlowData):
    """Reachability, loop and end-reachability analysis for the builder's current flow."""
    analysis = analyze_flow(flow)
    flow_analysis_counter.labels(result="clean" if not analysis.warnings else "warnings").inc()
    logger.info(f"Analyzed flow '{flow.name}': {len(flow.steps)} steps, {len(analysis.warnings)} warnings.")
    return APIResponse(
        success=True,
        message=f"Found {len(analysis.warnings)} warnings",
        data=analysis.model_dump(mode="json"),
        version=settings.api_version
    )
