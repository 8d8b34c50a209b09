from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

from app.core.config import get_settings


class PlanType(StrEnum):
    FREE = "free"
    CRM_BASIC = "crm_basic"
    CRM_PRO = "crm_pro"
    BUILD_PRO_BUNDLE = "build_pro_bundle"


@dataclass(frozen=True, slots=True)
class PlanTerms:
    plan_type: PlanType
    monthly_credit_allocation: int
    paid: bool


PLAN_CATALOG: dict[PlanType, PlanTerms] = {
    PlanType.FREE: PlanTerms(PlanType.FREE, monthly_credit_allocation=0, paid=False),
    PlanType.CRM_BASIC: PlanTerms(PlanType.CRM_BASIC, monthly_credit_allocation=0, paid=True),
    PlanType.CRM_PRO: PlanTerms(PlanType.CRM_PRO, monthly_credit_allocation=4200, paid=True),
    PlanType.BUILD_PRO_BUNDLE: PlanTerms(PlanType.BUILD_PRO_BUNDLE, monthly_credit_allocation=8811, paid=True),
}


def plan_terms(plan_type: PlanType | str) -> PlanTerms:
    return PLAN_CATALOG[PlanType(plan_type)]


def max_claims_for(plan_type: PlanType | str, override: int | None = None) -> int:
    if override is not None:
        return override
    settings = get_settings()
    return settings.paid_plan_max_claims if plan_terms(plan_type).paid else settings.free_plan_max_claims
