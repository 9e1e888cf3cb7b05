"""Service layer for the SoroSub payment service."""
from sorosub.services.admin import AdminConfig, AdminService
from sorosub.services.debt import DebtLedger
from sorosub.services.engine import CollectionResult, PaymentEngine
from sorosub.services.events import EventPublisher
from sorosub.services.registry import SubscriptionRegistry
from sorosub.services.token_client import TokenLedgerClient
from sorosub.services.token_ledger import InMemoryTokenLedger

__all__ = [
    "AdminConfig",
    "AdminService",
    "CollectionResult",
    "DebtLedger",
    "EventPublisher",
    "InMemoryTokenLedger",
    "PaymentEngine",
    "SubscriptionRegistry",
    "TokenLedgerClient",
]
