# api/security.py
# ============================================================================
# BOOKING PAYMENT SERVICE — HEADER AUTHENTICATION
# ============================================================================
# Internal callers identify themselves with X-User-Id / X-User-Roles.
# Every payment route requires the SERVICE_ACCOUNT role.
# ============================================================================

from typing import Optional

import structlog
from fastapi import Header, HTTPException

from storage.auditing import UserPrincipal, current_principal

logger = structlog.get_logger().bind(component="security")

SERVICE_ACCOUNT_ROLE = "SERVICE_ACCOUNT"


def parse_principal(user_id: Optional[str], roles: Optional[str]) -> Optional[UserPrincipal]:
    """Build a principal from raw header values; None when unusable."""
    if not user_id or not user_id.strip() or not roles or not roles.strip():
        return None

    try:
        parsed_id = int(user_id.strip())
    except ValueError:
        return None

    parsed_roles = frozenset(r.strip() for r in roles.split(",") if r.strip())
    return UserPrincipal(user_id=parsed_id, roles=parsed_roles)


async def require_service_account(
    x_user_id: Optional[str] = Header(default=None),
    x_user_roles: Optional[str] = Header(default=None),
) -> UserPrincipal:
    """Resolve the caller and bind it for audit stamps and log context."""
    principal = parse_principal(x_user_id, x_user_roles)

    if principal is None:
        logger.warning("Rejected request without usable identity headers")
        raise HTTPException(status_code=403, detail="Access denied")

    if not principal.has_role(SERVICE_ACCOUNT_ROLE):
        logger.warning("Rejected request without service account role", user_id=principal.user_id)
        raise HTTPException(status_code=403, detail="Access denied")

    current_principal.set(principal)
    structlog.contextvars.bind_contextvars(user_id=principal.user_id)
    return principal
