"""
Auditing - Who Touched the Row
==============================
Ambient request principal used to stamp `created_by` / `updated_by`.

The HTTP layer binds a principal for the lifetime of a request; the reaper
and startup code run with none bound and are stamped as "system".
"""

from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any, FrozenSet, Optional


SYSTEM_AUDITOR = "system"
UNKNOWN_PRINCIPAL_AUDITOR = "system-default"


@dataclass(frozen=True)
class UserPrincipal:
    """Caller identity resolved from the X-User-Id / X-User-Roles headers"""

    user_id: int
    roles: FrozenSet[str] = field(default_factory=frozenset)
    username: Optional[str] = None

    def has_role(self, role: str) -> bool:
        return role in self.roles


current_principal: ContextVar[Optional[Any]] = ContextVar("current_principal", default=None)


def resolve_auditor(principal: Any = None) -> str:
    """
    Map a principal to the audit name written on the row.

    - nothing bound        -> "system"
    - UserPrincipal        -> username, or "user-<id>" when blank
    - anything else        -> "system-default"
    """
    if principal is None:
        principal = current_principal.get()

    if principal is None:
        return SYSTEM_AUDITOR

    if isinstance(principal, UserPrincipal):
        if principal.username and principal.username.strip():
            return principal.username
        return f"user-{principal.user_id}"

    return UNKNOWN_PRINCIPAL_AUDITOR


@contextmanager
def principal_context(principal: Any):
    """Bind a principal for the enclosed block (tests, scripts)."""
    token = current_principal.set(principal)
    try:
        yield principal
    finally:
        current_principal.reset(token)
