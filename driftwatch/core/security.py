import hashlib
import hmac

from fastapi import Depends, Header, HTTPException, status

from driftwatch.core.auth import ROLE_SCOPES, Principal, parse_operator_keys
from driftwatch.core.config import Settings, get_settings


async def get_operator_principal(
    settings: Settings = Depends(get_settings),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
    x_operator_id: str | None = Header(default=None, alias="X-Operator-Id"),
) -> Principal:
    if not x_api_key or not x_operator_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="operator auth requires X-API-Key and X-Operator-Id",
        )

    credentials = [row for row in parse_operator_keys(settings.operator_api_keys) if row.operator_id == x_operator_id]
    if not credentials:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid operator credentials")

    key_hash = hashlib.sha256(x_api_key.encode("utf-8")).hexdigest()
    matched = next((row for row in credentials if hmac.compare_digest(row.key_hash, key_hash)), None)
    if not matched:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid operator credentials")

    return Principal(
        subject=matched.operator_id,
        role=matched.role,
        scopes=set(ROLE_SCOPES[matched.role]),
    )


def require_scopes(principal: Principal, required: set[str]) -> None:
    try:
        principal.require_scopes(required)
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
