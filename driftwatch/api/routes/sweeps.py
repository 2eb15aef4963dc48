import logging

from fastapi import APIRouter, Depends

from driftwatch.core.security import get_operator_principal, require_scopes
from driftwatch.schemas.sweeps import SweepReportOut
from driftwatch.services.workflow import get_workflow_router

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("", response_model=SweepReportOut)
async def run_sweep(
    principal=Depends(get_operator_principal),
    workflow=Depends(get_workflow_router),
) -> SweepReportOut:
    require_scopes(principal, {"sweeps:write"})

    logger.info("sweep requested actor=%s", principal.subject)
    report = await workflow.run_sweep()
    return SweepReportOut(**report.as_dict())
