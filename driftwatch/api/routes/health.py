from fastapi import APIRouter, Depends, HTTPException, status

from driftwatch.services.models import RecordKind
from driftwatch.services.repository import get_repository
from driftwatch.services.store import RecordQuery, RepositoryUnavailableError

router = APIRouter()


@router.get("/")
@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz")
async def readyz(repository=Depends(get_repository)) -> dict[str, str | int]:
    try:
        active = await repository.count(RecordKind.MONITOR, RecordQuery(active=True))
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return {"status": "ready", "active_monitors": active}
