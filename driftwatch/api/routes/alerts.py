from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, status

from driftwatch.core.security import get_operator_principal, require_scopes
from driftwatch.schemas.records import AlertOut, AlertPatchRequest
from driftwatch.services.models import AlertStatus, ContentAlert, RecordKind
from driftwatch.services.repository import get_repository
from driftwatch.services.store import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
)
from driftwatch.services.workflow import get_workflow_router

router = APIRouter()


@router.get("/{alert_id}", response_model=AlertOut)
async def get_alert(
    alert_id: str,
    principal=Depends(get_operator_principal),
    repository=Depends(get_repository),
) -> AlertOut:
    require_scopes(principal, {"backlog:read"})

    try:
        alert = await repository.get_by_id(RecordKind.ALERT, alert_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    if not isinstance(alert, ContentAlert):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="alert not found")
    return AlertOut(**asdict(alert))


@router.patch("/{alert_id}", response_model=AlertOut)
async def patch_alert(
    alert_id: str,
    payload: AlertPatchRequest,
    principal=Depends(get_operator_principal),
    workflow=Depends(get_workflow_router),
) -> AlertOut:
    require_scopes(principal, {"backlog:write"})

    try:
        alert = await workflow.resolve_alert(
            alert_id,
            status=AlertStatus(payload.status) if payload.status else None,
            actor=principal.subject,
            notes=payload.notes,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return AlertOut(**asdict(alert))
