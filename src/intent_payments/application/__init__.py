"""Application layer - services and use cases."""

from intent_payments.application.auth import AuthContext, Authenticator
from intent_payments.application.reconciler import PaymentReconciler
from intent_payments.application.services import (
    PaymentOrchestrator,
    PrepareResult,
    ReconcileOutcome,
)
from intent_payments.application.unit_of_work import UnitOfWork


__all__ = [
    "AuthContext",
    "Authenticator",
    "PaymentOrchestrator",
    "PaymentReconciler",
    "PrepareResult",
    "ReconcileOutcome",
    "UnitOfWork",
]
