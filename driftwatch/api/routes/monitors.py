from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Query, status

from driftwatch.core.security import get_operator_principal, require_scopes
from driftwatch.schemas.monitors import MonitorCreateRequest, MonitorOut, MonitorPatchRequest
from driftwatch.services.models import ContentMonitor, RecordKind, new_record_id
from driftwatch.services.repository import get_repository
from driftwatch.services.store import (
    RecordQuery,
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
)
from driftwatch.services.workflow import get_workflow_router

router = APIRouter()


def monitor_out(monitor: ContentMonitor) -> MonitorOut:
    return MonitorOut(**asdict(monitor), guid=monitor.guid)


@router.get("", response_model=list[MonitorOut])
async def list_monitors(
    principal=Depends(get_operator_principal),
    repository=Depends(get_repository),
    code: str | None = Query(default=None),
    active: bool | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> list[MonitorOut]:
    require_scopes(principal, {"monitors:read"})

    try:
        rows = await repository.list(
            RecordKind.MONITOR,
            RecordQuery(code=code, active=active, limit=limit, offset=offset),
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [monitor_out(row) for row in rows]


@router.get("/{monitor_id}", response_model=MonitorOut)
async def get_monitor(
    monitor_id: str,
    principal=Depends(get_operator_principal),
    repository=Depends(get_repository),
) -> MonitorOut:
    require_scopes(principal, {"monitors:read"})

    try:
        monitor = await repository.get_by_id(RecordKind.MONITOR, monitor_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    if not isinstance(monitor, ContentMonitor):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="monitor not found")
    return monitor_out(monitor)


@router.post("", response_model=MonitorOut, status_code=status.HTTP_201_CREATED)
async def create_monitor(
    payload: MonitorCreateRequest,
    principal=Depends(get_operator_principal),
    repository=Depends(get_repository),
) -> MonitorOut:
    require_scopes(principal, {"monitors:write"})

    monitor = ContentMonitor(
        id=new_record_id(),
        code=payload.code.strip(),
        content_type=payload.content_type.strip(),
        name=payload.name.strip(),
        url=payload.url.strip(),
        interval=payload.interval,
        active=payload.active,
        alerts=payload.alerts,
    )
    try:
        stored = await repository.add(monitor)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return monitor_out(stored)


@router.patch("/{monitor_id}", response_model=MonitorOut)
async def patch_monitor(
    monitor_id: str,
    payload: MonitorPatchRequest,
    principal=Depends(get_operator_principal),
    workflow=Depends(get_workflow_router),
) -> MonitorOut:
    require_scopes(principal, {"monitors:write"})

    try:
        monitor = await workflow.update_monitor(
            monitor_id,
            actor=principal.subject,
            active=payload.active,
            alerts=payload.alerts,
            url=payload.url,
            interval=payload.interval,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return monitor_out(monitor)


@router.post("/{monitor_id}/restart", response_model=MonitorOut)
async def restart_monitor(
    monitor_id: str,
    principal=Depends(get_operator_principal),
    workflow=Depends(get_workflow_router),
) -> MonitorOut:
    require_scopes(principal, {"monitors:write"})

    try:
        monitor = await workflow.restart_monitor(monitor_id, actor=principal.subject)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return monitor_out(monitor)
