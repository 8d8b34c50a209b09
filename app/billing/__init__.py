from app.billing.api import ai_router, router
from app.billing.ledger import BilledCompletion, CreditLedger, CreditStatus, credit_ledger
from app.billing.models import (
    AiUsageRecord,
    BillingSubscription,
    CreditPurchase,
    ProcessedWebhookEvent,
    PurchaseStatus,
    SubscriptionStatus,
)
from app.billing.provider import (
    AIProvider,
    CompletionRequest,
    CompletionResult,
    OpenAIProvider,
    ProviderError,
    StreamChunk,
    TokenUsage,
    get_ai_provider,
)
from app.billing.tariff import DEFAULT_MODEL, TARIFF, compute_cost
from app.billing.webhooks import PaymentWebhookService, payment_webhook_service

__all__ = [
    "ai_router",
    "router",
    "BilledCompletion",
    "CreditLedger",
    "CreditStatus",
    "credit_ledger",
    "AiUsageRecord",
    "BillingSubscription",
    "CreditPurchase",
    "ProcessedWebhookEvent",
    "PurchaseStatus",
    "SubscriptionStatus",
    "AIProvider",
    "CompletionRequest",
    "CompletionResult",
    "OpenAIProvider",
    "ProviderError",
    "StreamChunk",
    "TokenUsage",
    "get_ai_provider",
    "DEFAULT_MODEL",
    "TARIFF",
    "compute_cost",
    "PaymentWebhookService",
    "payment_webhook_service",
]
