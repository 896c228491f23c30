"""Sagas - checkout כטרנזקציה מפוצלת עם compensation."""
from app.domain.sagas.checkout_fallback import CheckoutFallback
from app.domain.sagas.checkout_saga import CheckoutOutcome, CheckoutSaga
from app.domain.sagas.orchestrator import SagaOrchestrator, SagaResult, SagaStep
from app.domain.sagas.state_store import (
    KeyValueSagaStateStore,
    SagaStateStore,
    SqlSagaStateStore,
)

__all__ = [
    "CheckoutFallback",
    "CheckoutOutcome",
    "CheckoutSaga",
    "KeyValueSagaStateStore",
    "SagaOrchestrator",
    "SagaResult",
    "SagaStateStore",
    "SagaStep",
    "SqlSagaStateStore",
]
