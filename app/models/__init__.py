from app.billing.models import AiUsageRecord, BillingSubscription, CreditPurchase, ProcessedWebhookEvent
from app.models.audit import AuditLog
from app.platform.accounts.models import UserAccount
from app.teams.models import EnterpriseClaim, Enterprise, EnterpriseInvitation, ProfileClaim, TeamMembership

__all__ = [
	"AiUsageRecord",
	"AuditLog",
	"BillingSubscription",
	"CreditPurchase",
	"Enterprise",
	"EnterpriseClaim",
	"EnterpriseInvitation",
	"ProcessedWebhookEvent",
	"ProfileClaim",
	"TeamMembership",
	"UserAccount",
]
