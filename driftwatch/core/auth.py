from dataclasses import dataclass
from enum import Enum


class OperatorRole(str, Enum):
    VIEWER = "viewer"
    OPERATOR = "operator"
    ADMIN = "admin"


ROLE_SCOPES: dict[OperatorRole, set[str]] = {
    OperatorRole.VIEWER: {"backlog:read", "monitors:read"},
    OperatorRole.OPERATOR: {"backlog:read", "backlog:write", "monitors:read", "monitors:write"},
    OperatorRole.ADMIN: {"backlog:read", "backlog:write", "monitors:read", "monitors:write", "sweeps:write"},
}


@dataclass(slots=True)
class Principal:
    subject: str
    role: OperatorRole
    scopes: set[str]

    def require_scopes(self, required: set[str]) -> None:
        missing = required - self.scopes
        if missing:
            raise PermissionError(f"missing required scopes: {sorted(missing)}")


@dataclass(slots=True)
class OperatorCredential:
    operator_id: str
    role: OperatorRole
    key_hash: str


def parse_operator_keys(raw: str | None) -> list[OperatorCredential]:
    """Parse ``operator_id:role:sha256hex`` entries; malformed entries are skipped."""
    if not raw:
        return []
    credentials: list[OperatorCredential] = []
    for chunk in raw.split(","):
        parts = [part.strip() for part in chunk.split(":")]
        if len(parts) != 3 or not all(parts):
            continue
        operator_id, role, key_hash = parts
        try:
            resolved_role = OperatorRole(role.lower())
        except ValueError:
            continue
        credentials.append(OperatorCredential(operator_id=operator_id, role=resolved_role, key_hash=key_hash.lower()))
    return credentials
