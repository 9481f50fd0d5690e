from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, Iterable
import uuid

from app.core.exceptions import PermissionDeniedError


class Role(str, Enum):
    """Roles supplied by the authentication collaborator."""
    CUSTOMER = "customer"
    STAFF = "staff"
    MANAGER = "manager"


# Role tiers used by the order engine
OPS_ROLES: FrozenSet[Role] = frozenset({Role.STAFF, Role.MANAGER})
ELEVATED_ROLES: FrozenSet[Role] = frozenset({Role.MANAGER})


@dataclass(frozen=True)
class Principal:
    """Authenticated caller. Trusted as given, never re-derived."""
    id: uuid.UUID
    role: Role

    @property
    def is_ops(self) -> bool:
        return self.role in OPS_ROLES


def parse_role(value: str) -> Role:
    """Convert a role claim to a Role. Unknown roles fall back to customer."""
    try:
        return Role(str(value).strip().lower())
    except ValueError:
        return Role.CUSTOMER


def require_role(principal: Principal, allowed: Iterable[Role], action: str) -> None:
    """Raise PermissionDeniedError unless the principal holds one of the allowed roles."""
    allowed = frozenset(allowed)
    if principal.role not in allowed:
        raise PermissionDeniedError(
            role=principal.role.value,
            required_roles=[r.value for r in allowed],
            action=action,
        )
