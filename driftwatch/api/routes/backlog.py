from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Query, status

from driftwatch.core.security import get_operator_principal, require_scopes
from driftwatch.schemas.records import AlertOut, BacklogKind, BacklogPageOut, ChangeOut, FailureOut, ReviewOut
from driftwatch.services.backlog import BacklogFilter, get_backlog_engine
from driftwatch.services.models import RecordKind, UnknownStatusError
from driftwatch.services.store import RepositoryUnavailableError, RepositoryValidationError

router = APIRouter()

_KINDS: dict[str, RecordKind] = {
    "reviews": RecordKind.REVIEW,
    "alerts": RecordKind.ALERT,
    "failures": RecordKind.FAILURE,
    "changes": RecordKind.CHANGE,
}
_OUT_MODELS = {
    RecordKind.REVIEW: ReviewOut,
    RecordKind.ALERT: AlertOut,
    RecordKind.FAILURE: FailureOut,
    RecordKind.CHANGE: ChangeOut,
}


@router.get("/{kind}", response_model=BacklogPageOut)
async def list_backlog(
    kind: BacklogKind,
    principal=Depends(get_operator_principal),
    backlog=Depends(get_backlog_engine),
    code: str | None = Query(default=None),
    monitor_id: str | None = Query(default=None),
    status_filter: str | None = Query(default=None, alias="status"),
    session_id: int | None = Query(default=None, ge=0),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> BacklogPageOut:
    require_scopes(principal, {"backlog:read"})

    record_kind = _KINDS[kind]
    try:
        page = await backlog.page(
            record_kind,
            BacklogFilter(
                code=code,
                monitor_id=monitor_id,
                status=status_filter,
                session_id=session_id,
                limit=limit,
                offset=offset,
            ),
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except (RepositoryValidationError, UnknownStatusError) as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

    out_model = _OUT_MODELS[record_kind]
    return BacklogPageOut(
        kind=kind,
        total=page.total,
        limit=page.limit,
        offset=page.offset,
        visible_since=page.visible_since,
        items=[out_model(**asdict(row)) for row in page.items],
    )
