from app.platform.accounts.models import UserAccount
from app.platform.accounts.plans import PLAN_CATALOG, PlanTerms, PlanType, max_claims_for, plan_terms
from app.platform.accounts.service import AccountService, account_service, normalize_email

__all__ = [
    "UserAccount",
    "PLAN_CATALOG",
    "PlanTerms",
    "PlanType",
    "max_claims_for",
    "plan_terms",
    "AccountService",
    "account_service",
    "normalize_email",
]
