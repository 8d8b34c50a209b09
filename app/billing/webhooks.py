from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Literal

import stripe
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.billing.ledger import CreditLedger, credit_ledger
from app.billing.models import (
    BillingSubscription,
    CreditPurchase,
    ProcessedWebhookEvent,
    PurchaseStatus,
    SubscriptionStatus,
    utcnow,
)
from app.core.config import get_settings
from app.metrics import observe_webhook_event
from app.platform.accounts.models import UserAccount
from app.platform.accounts.plans import PlanType, plan_terms
from app.platform.accounts.service import AccountService, account_service
from app.platform.security.errors import BadRequest, ServiceUnavailable


logger = logging.getLogger("app.billing")

WebhookOutcome = Literal["processed", "duplicate", "ignored"]


def verify_stripe_event(payload: bytes, signature: str | None) -> dict[str, Any]:
    settings = get_settings()
    if not settings.stripe_webhook_secret:
        raise ServiceUnavailable("Payment webhooks are not configured")
    if not signature:
        raise BadRequest("Missing Stripe-Signature header")

    body = payload.decode("utf-8")
    try:
        stripe.WebhookSignature.verify_header(
            body,
            signature,
            settings.stripe_webhook_secret,
            settings.stripe_webhook_tolerance_seconds,
        )
    except stripe.SignatureVerificationError as exc:
        observe_webhook_event("unknown", "bad_signature")
        logger.warning("webhook.bad_signature", extra={"error": str(exc)[:200]})
        raise BadRequest("Webhook signature verification failed") from exc

    try:
        event = json.loads(body)
    except ValueError as exc:
        raise BadRequest("Webhook payload is not valid JSON") from exc
    if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
        raise BadRequest("Webhook payload is missing id or type")
    return event


def dedup_key(event: dict[str, Any]) -> str:
    event_type = str(event.get("type", ""))
    data_object = _data_object(event)
    if event_type.startswith("checkout.session.") and data_object.get("id"):
        return f"checkout_session:{data_object['id']}"
    return f"event:{event['id']}"


def _data_object(event: dict[str, Any]) -> dict[str, Any]:
    data = event.get("data")
    if isinstance(data, dict) and isinstance(data.get("object"), dict):
        return data["object"]
    return {}


def _parse_uuid(value: Any) -> uuid.UUID | None:
    if not value:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _from_timestamp(value: Any) -> datetime | None:
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return None


@dataclass(slots=True)
class PaymentWebhookService:
    ledger: CreditLedger = credit_ledger
    accounts: AccountService = account_service

    def handle(self, session: Session, event: dict[str, Any]) -> WebhookOutcome:
        event_type = str(event["type"])
        key = dedup_key(event)
        if session.get(ProcessedWebhookEvent, key) is not None:
            observe_webhook_event(event_type, "duplicate")
            logger.info("webhook.duplicate", extra={"event_id": event["id"], "event_type": event_type})
            return "duplicate"

        try:
            session.add(ProcessedWebhookEvent(dedup_key=key, event_id=str(event["id"]), event_type=event_type))
            session.flush()
        except IntegrityError:
            session.rollback()
            observe_webhook_event(event_type, "duplicate")
            logger.info("webhook.duplicate", extra={"event_id": event["id"], "event_type": event_type})
            return "duplicate"

        handler = self._handlers().get(event_type)
        try:
            outcome: WebhookOutcome = handler(session, _data_object(event)) if handler is not None else "ignored"
            session.commit()
        except IntegrityError:
            # A concurrent delivery committed the same dedup key first.
            session.rollback()
            observe_webhook_event(event_type, "duplicate")
            return "duplicate"
        except Exception:
            session.rollback()
            observe_webhook_event(event_type, "failed")
            logger.exception("webhook.failed", extra={"event_id": event["id"], "event_type": event_type})
            raise

        observe_webhook_event(event_type, outcome)
        logger.info("webhook.handled", extra={"event_id": event["id"], "event_type": event_type, "status": outcome})
        return outcome

    def _handlers(self) -> dict[str, Callable[[Session, dict[str, Any]], WebhookOutcome]]:
        return {
            "checkout.session.completed": self._checkout_completed,
            "customer.subscription.updated": self._subscription_updated,
            "customer.subscription.deleted": self._subscription_deleted,
            "invoice.payment_failed": self._payment_failed,
        }

    def _checkout_completed(self, session: Session, checkout: dict[str, Any]) -> WebhookOutcome:
        metadata = checkout.get("metadata") or {}
        account = self._account_for(session, metadata.get("user_id"), checkout.get("customer"))
        if account is None:
            logger.warning("webhook.unknown_account", extra={"event_type": "checkout.session.completed"})
            return "ignored"

        if metadata.get("type") == "credit_purchase":
            return self._complete_credit_purchase(session, account, checkout, metadata)
        if metadata.get("plan_type"):
            return self._activate_subscription(session, account, checkout, metadata)
        return "ignored"

    def _complete_credit_purchase(
        self,
        session: Session,
        account: UserAccount,
        checkout: dict[str, Any],
        metadata: dict[str, Any],
    ) -> WebhookOutcome:
        try:
            amount = int(metadata.get("credit_amount", 0))
        except (TypeError, ValueError):
            amount = 0
        if amount <= 0:
            logger.warning("webhook.invalid_credit_amount", extra={"user_id": str(account.id)})
            return "ignored"

        purchase = None
        purchase_id = _parse_uuid(metadata.get("credit_purchase_id"))
        if purchase_id is not None:
            purchase = session.get(CreditPurchase, purchase_id)
        if purchase is None and checkout.get("id"):
            purchase = session.scalar(select(CreditPurchase).where(CreditPurchase.provider_session_id == checkout["id"]))
        if purchase is None:
            purchase = CreditPurchase(user_id=account.id, amount=amount)
        if purchase.status == PurchaseStatus.COMPLETED:
            return "ignored"

        purchase.status = PurchaseStatus.COMPLETED.value
        purchase.provider_session_id = checkout.get("id") or purchase.provider_session_id
        purchase.completed_at = utcnow()
        session.add(purchase)
        self.ledger.add_credits(session, account.id, amount)
        logger.info("credits.purchased", extra={"user_id": str(account.id), "cost": amount})
        return "processed"

    def _activate_subscription(
        self,
        session: Session,
        account: UserAccount,
        checkout: dict[str, Any],
        metadata: dict[str, Any],
    ) -> WebhookOutcome:
        try:
            plan = plan_terms(metadata["plan_type"])
        except ValueError:
            logger.warning("webhook.unknown_plan", extra={"user_id": str(account.id)})
            return "ignored"

        provider_subscription_id = checkout.get("subscription")
        subscription = None
        if provider_subscription_id:
            subscription = session.scalar(
                select(BillingSubscription).where(BillingSubscription.provider_subscription_id == provider_subscription_id)
            )
        if subscription is None:
            subscription = BillingSubscription(user_id=account.id, provider_subscription_id=provider_subscription_id)
        period_days = 365 if str(metadata.get("is_yearly", "")).lower() == "true" else 30
        subscription.plan_type = plan.plan_type.value
        subscription.status = SubscriptionStatus.ACTIVE.value
        subscription.provider_customer_id = checkout.get("customer")
        subscription.current_period_end = utcnow() + timedelta(days=period_days)
        session.add(subscription)

        account.plan_type = plan.plan_type.value
        account.subscription_status = SubscriptionStatus.ACTIVE.value
        account.monthly_allocation = plan.monthly_credit_allocation
        account.credit_limit = plan.monthly_credit_allocation
        if checkout.get("customer"):
            account.stripe_customer_id = checkout["customer"]
        session.add(account)
        session.flush()
        if plan.monthly_credit_allocation > 0:
            self.ledger.add_credits(session, account.id, plan.monthly_credit_allocation)
        logger.info(
            "subscription.activated",
            extra={"user_id": str(account.id), "status": plan.plan_type.value, "cost": plan.monthly_credit_allocation},
        )
        return "processed"

    def _subscription_updated(self, session: Session, provider_subscription: dict[str, Any]) -> WebhookOutcome:
        account = self._account_for(session, None, provider_subscription.get("customer"))
        if account is None:
            return "ignored"
        status = str(provider_subscription.get("status") or SubscriptionStatus.ACTIVE.value)
        period_end = _from_timestamp(provider_subscription.get("current_period_end"))
        subscription = self._subscription_for(session, provider_subscription.get("id"))
        if subscription is not None:
            subscription.status = status
            if period_end is not None:
                subscription.current_period_end = period_end
            session.add(subscription)
        account.subscription_status = status
        session.add(account)
        return "processed"

    def _subscription_deleted(self, session: Session, provider_subscription: dict[str, Any]) -> WebhookOutcome:
        account = self._account_for(session, None, provider_subscription.get("customer"))
        if account is None:
            return "ignored"
        subscription = self._subscription_for(session, provider_subscription.get("id"))
        if subscription is not None:
            subscription.status = SubscriptionStatus.CANCELED.value
            session.add(subscription)
        free = plan_terms(PlanType.FREE)
        account.subscription_status = SubscriptionStatus.CANCELED.value
        account.plan_type = free.plan_type.value
        account.monthly_allocation = free.monthly_credit_allocation
        account.credit_limit = free.monthly_credit_allocation
        session.add(account)
        return "processed"

    def _payment_failed(self, session: Session, invoice: dict[str, Any]) -> WebhookOutcome:
        account = self._account_for(session, None, invoice.get("customer"))
        if account is None:
            return "ignored"
        account.subscription_status = SubscriptionStatus.PAST_DUE.value
        session.add(account)
        return "processed"

    def _account_for(self, session: Session, user_id: Any, customer_id: Any) -> UserAccount | None:
        parsed = _parse_uuid(user_id)
        if parsed is not None:
            account = self.accounts.get_account(session, parsed)
            if account is not None:
                return account
        if customer_id:
            return session.scalar(select(UserAccount).where(UserAccount.stripe_customer_id == str(customer_id)))
        return None

    def _subscription_for(self, session: Session, provider_subscription_id: Any) -> BillingSubscription | None:
        if not provider_subscription_id:
            return None
        return session.scalar(
            select(BillingSubscription).where(BillingSubscription.provider_subscription_id == str(provider_subscription_id))
        )


payment_webhook_service = PaymentWebhookService()
