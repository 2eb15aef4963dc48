from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, status

from driftwatch.core.security import get_operator_principal, require_scopes
from driftwatch.schemas.records import ReviewOut, ReviewPatchRequest
from driftwatch.services.models import ContentReview, RecordKind, ReviewStatus
from driftwatch.services.repository import get_repository
from driftwatch.services.store import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
)
from driftwatch.services.workflow import get_workflow_router

router = APIRouter()


@router.get("/{review_id}", response_model=ReviewOut)
async def get_review(
    review_id: str,
    principal=Depends(get_operator_principal),
    repository=Depends(get_repository),
) -> ReviewOut:
    require_scopes(principal, {"backlog:read"})

    try:
        review = await repository.get_by_id(RecordKind.REVIEW, review_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    if not isinstance(review, ContentReview):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="review not found")
    return ReviewOut(**asdict(review))


@router.patch("/{review_id}", response_model=ReviewOut)
async def patch_review(
    review_id: str,
    payload: ReviewPatchRequest,
    principal=Depends(get_operator_principal),
    workflow=Depends(get_workflow_router),
) -> ReviewOut:
    require_scopes(principal, {"backlog:write"})

    try:
        review = await workflow.resolve_review(
            review_id,
            status=ReviewStatus(payload.status) if payload.status else None,
            actor=principal.subject,
            notes=payload.notes,
            substantive=payload.substantive,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return ReviewOut(**asdict(review))
