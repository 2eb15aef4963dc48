from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, status

from driftwatch.core.security import get_operator_principal, require_scopes
from driftwatch.schemas.records import FailureOut, FailurePatchRequest
from driftwatch.services.models import ContentFailure, FailureStatus, RecordKind
from driftwatch.services.repository import get_repository
from driftwatch.services.store import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
)
from driftwatch.services.workflow import get_workflow_router

router = APIRouter()


@router.get("/{failure_id}", response_model=FailureOut)
async def get_failure(
    failure_id: str,
    principal=Depends(get_operator_principal),
    repository=Depends(get_repository),
) -> FailureOut:
    require_scopes(principal, {"backlog:read"})

    try:
        failure = await repository.get_by_id(RecordKind.FAILURE, failure_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    if not isinstance(failure, ContentFailure):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="failure not found")
    return FailureOut(**asdict(failure))


@router.patch("/{failure_id}", response_model=FailureOut)
async def patch_failure(
    failure_id: str,
    payload: FailurePatchRequest,
    principal=Depends(get_operator_principal),
    workflow=Depends(get_workflow_router),
) -> FailureOut:
    require_scopes(principal, {"backlog:write"})

    try:
        failure = await workflow.resolve_failure(
            failure_id,
            status=FailureStatus(payload.status) if payload.status else None,
            actor=principal.subject,
            notes=payload.notes,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return FailureOut(**asdict(failure))
