# storage/__init__.py
# ============================================================================
# BOOKING PAYMENT SERVICE — STORAGE MODULE
# ============================================================================
# Payment persistence (Postgres / in-memory) and audit principal
# ============================================================================

from storage.auditing import (
    UserPrincipal,
    current_principal,
    resolve_auditor,
    principal_context,
)

from storage.payment_store import (
    IPaymentStore,
    PostgresPaymentStore,
    InMemoryPaymentStore,
    create_payment_store,
)

__all__ = [
    # Auditing
    "UserPrincipal",
    "current_principal",
    "resolve_auditor",
    "principal_context",
    # Payment store
    "IPaymentStore",
    "PostgresPaymentStore",
    "InMemoryPaymentStore",
    "create_payment_store",
]
