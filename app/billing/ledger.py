from __future__ import annotations

import json
import logging
import time
import uuid
from collections.abc import Generator, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.billing.models import AiUsageRecord, BillingSubscription, SubscriptionStatus, utcnow
from app.billing.provider import AIProvider, CompletionRequest, CompletionResult, ProviderError
from app.billing.tariff import compute_cost, estimate_tokens
from app.metrics import observe_credit_charge, observe_provider_call
from app.otel import provider_call_span, start_streaming_provider_span
from app.platform.accounts.models import UserAccount
from app.platform.accounts.service import AccountService, account_service
from app.platform.security.context import AuthContext
from app.platform.security.errors import AIRequestFailed, InsufficientCredits, NotFound
from app.platform.security.roles import PlatformRole


logger = logging.getLogger("app.billing")

_ACTIVE_SUBSCRIPTION_STATUSES = (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value)


def serialize_messages(messages: list[dict[str, Any]]) -> str:
    return json.dumps(messages, separators=(",", ":"), ensure_ascii=False, default=str)


@dataclass(slots=True)
class BilledCompletion:
    result: CompletionResult
    cost: int
    tokens_prompt: int
    tokens_completion: int
    estimated: bool
    usage_record_id: uuid.UUID


@dataclass(slots=True)
class CreditStatus:
    balance: int
    credit_limit: int
    monthly_allocation: int
    overage_allowed: bool
    credit_floor: int
    plan_type: str
    subscription_status: str | None
    billing_exempt: bool


@dataclass(slots=True, eq=False)
class CreditLedger:
    accounts: AccountService = account_service

    def check_credits(self, session: Session, user_id: uuid.UUID, estimated_cost: int = 0) -> bool:
        account = self._require_account(session, user_id)
        if account.platform_role == PlatformRole.ADMIN:
            return True
        if account.overage_allowed:
            return True
        if account.credit_balance <= account.credit_floor:
            return False
        if estimated_cost > 0 and account.credit_balance - estimated_cost < account.credit_floor:
            return False
        return True

    def call_with_billing(
        self,
        session: Session,
        ctx: AuthContext,
        provider: AIProvider,
        request: CompletionRequest,
        operation_type: str,
        *,
        entity_type: str | None = None,
        entity_id: str | None = None,
    ) -> BilledCompletion:
        self._ensure_credits(session, ctx, request)
        # No transaction stays open across the provider round trip.
        session.commit()

        try:
            with self._provider_span(request, operation_type):
                result = provider.complete(request)
        except ProviderError as exc:
            self.record_failure(
                session,
                user_id=ctx.user_id,
                model=request.model,
                operation_type=operation_type,
                error=str(exc),
                entity_type=entity_type,
                entity_id=entity_id,
            )
            raise AIRequestFailed(f"AI request failed: {exc}") from exc

        if result.usage is not None:
            tokens_prompt = result.usage.prompt_tokens
            tokens_completion = result.usage.completion_tokens
            metadata: dict[str, Any] = {
                "total_tokens": result.usage.total_tokens,
                "response_id": result.id,
                "model": result.model,
            }
            estimated = False
        else:
            logger.warning("ai.usage_missing", extra={"model": request.model, "operation_type": operation_type})
            tokens_prompt = estimate_tokens(serialize_messages(request.messages))
            tokens_completion = estimate_tokens(result.content)
            metadata = {"estimated": True, "response_id": result.id}
            estimated = True

        cost = compute_cost(request.model, tokens_prompt, tokens_completion)
        record = self.charge(
            session,
            user_id=ctx.user_id,
            model=request.model,
            tokens_prompt=tokens_prompt,
            tokens_completion=tokens_completion,
            operation_type=operation_type,
            cost=cost,
            entity_type=entity_type,
            entity_id=entity_id,
            metadata=metadata,
        )
        return BilledCompletion(
            result=result,
            cost=cost,
            tokens_prompt=tokens_prompt,
            tokens_completion=tokens_completion,
            estimated=estimated,
            usage_record_id=record.id,
        )

    def stream_with_billing(
        self,
        session: Session,
        ctx: AuthContext,
        provider: AIProvider,
        request: CompletionRequest,
        operation_type: str,
        *,
        entity_type: str | None = None,
        entity_id: str | None = None,
    ) -> Generator[str, None, None]:
        """Check credits now and return a generator of content deltas that charges once when it finishes."""
        self._ensure_credits(session, ctx, request)
        session.commit()
        return self._metered_stream(
            session,
            ctx,
            provider,
            request,
            operation_type,
            entity_type=entity_type,
            entity_id=entity_id,
        )

    def _metered_stream(
        self,
        session: Session,
        ctx: AuthContext,
        provider: AIProvider,
        request: CompletionRequest,
        operation_type: str,
        *,
        entity_type: str | None,
        entity_id: str | None,
    ) -> Generator[str, None, None]:
        content: list[str] = []
        tool_arguments: list[str] = []
        chunks_received = 0
        failed = False
        span = start_streaming_provider_span(request.model, operation_type)
        started = time.perf_counter()
        try:
            for chunk in provider.stream(request):
                chunks_received += 1
                if chunk.tool_arguments:
                    tool_arguments.append(chunk.tool_arguments)
                if chunk.content:
                    content.append(chunk.content)
                    yield chunk.content
        except ProviderError as exc:
            failed = True
            span.record_exception(exc)
            self.record_failure(
                session,
                user_id=ctx.user_id,
                model=request.model,
                operation_type=operation_type,
                error=str(exc),
                entity_type=entity_type,
                entity_id=entity_id,
            )
            raise AIRequestFailed(f"AI request failed: {exc}") from exc
        finally:
            observe_provider_call(request.model, time.perf_counter() - started)
            span.set_attribute("ai.chunks_received", chunks_received)
            span.end()
            if not failed:
                tokens_prompt = estimate_tokens(serialize_messages(request.messages))
                tokens_completion = estimate_tokens("".join(content) + "".join(tool_arguments))
                self.charge(
                    session,
                    user_id=ctx.user_id,
                    model=request.model,
                    tokens_prompt=tokens_prompt,
                    tokens_completion=tokens_completion,
                    operation_type=operation_type,
                    entity_type=entity_type,
                    entity_id=entity_id,
                    metadata={"streaming": True, "estimated": True, "chunks_received": chunks_received},
                )

    def charge(
        self,
        session: Session,
        *,
        user_id: uuid.UUID,
        model: str,
        tokens_prompt: int,
        tokens_completion: int,
        operation_type: str,
        cost: int | None = None,
        entity_type: str | None = None,
        entity_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AiUsageRecord:
        amount = compute_cost(model, tokens_prompt, tokens_completion) if cost is None else cost
        record_metadata = dict(metadata or {})
        try:
            account = self._require_account(session, user_id, for_update=True)
            exempt = account.platform_role == PlatformRole.ADMIN
            if exempt:
                record_metadata["billing_exempt"] = True
            else:
                session.execute(
                    update(UserAccount)
                    .where(UserAccount.id == user_id)
                    .values(credit_balance=UserAccount.credit_balance - amount)
                )
            record = AiUsageRecord(
                user_id=user_id,
                subscription_id=self._subscription_id(session, user_id),
                operation_type=operation_type,
                model_used=model,
                tokens_prompt=tokens_prompt,
                tokens_completion=tokens_completion,
                provider_cost=amount,
                cost=amount,
                entity_type=entity_type,
                entity_id=entity_id,
                usage_metadata=record_metadata or None,
                success=True,
            )
            session.add(record)
            session.commit()
        except Exception:
            session.rollback()
            observe_credit_charge("failed")
            logger.exception("credits.charge_failed", extra={"user_id": str(user_id), "model": model, "cost": amount})
            raise

        observe_credit_charge("exempt" if exempt else "charged", 0 if exempt else amount)
        logger.info(
            "credits.charged",
            extra={
                "user_id": str(user_id),
                "model": model,
                "operation_type": operation_type,
                "cost": amount,
                "status": "exempt" if exempt else "charged",
            },
        )
        return record

    def record_failure(
        self,
        session: Session,
        *,
        user_id: uuid.UUID,
        model: str,
        operation_type: str,
        error: str,
        entity_type: str | None = None,
        entity_id: str | None = None,
    ) -> AiUsageRecord:
        record = AiUsageRecord(
            user_id=user_id,
            subscription_id=None,
            operation_type=operation_type,
            model_used=model,
            tokens_prompt=0,
            tokens_completion=0,
            provider_cost=0,
            cost=0,
            entity_type=entity_type,
            entity_id=entity_id,
            usage_metadata={"error": error, "timestamp": utcnow().isoformat()},
            success=False,
            error_message=error[:2000],
        )
        try:
            session.add(record)
            session.commit()
        except Exception:
            session.rollback()
            raise
        observe_credit_charge("provider_failed")
        logger.warning(
            "ai.request_failed",
            extra={"user_id": str(user_id), "model": model, "operation_type": operation_type, "error": error[:500]},
        )
        return record

    def add_credits(self, session: Session, user_id: uuid.UUID, amount: int) -> None:
        """Increment the balance inside the caller's transaction."""
        result = session.execute(
            update(UserAccount)
            .where(UserAccount.id == user_id)
            .values(credit_balance=UserAccount.credit_balance + amount)
        )
        if result.rowcount == 0:
            raise NotFound("Account not found")
        logger.info("credits.added", extra={"user_id": str(user_id), "cost": amount})

    def credit_status(self, session: Session, ctx: AuthContext) -> CreditStatus:
        account = self._require_account(session, ctx.user_id)
        return CreditStatus(
            balance=account.credit_balance,
            credit_limit=account.credit_limit,
            monthly_allocation=account.monthly_allocation,
            overage_allowed=account.overage_allowed,
            credit_floor=account.credit_floor,
            plan_type=account.plan_type,
            subscription_status=account.subscription_status,
            billing_exempt=account.platform_role == PlatformRole.ADMIN,
        )

    def usage_history(self, session: Session, ctx: AuthContext, limit: int = 50) -> list[AiUsageRecord]:
        stmt = (
            select(AiUsageRecord)
            .where(AiUsageRecord.user_id == ctx.user_id)
            .order_by(AiUsageRecord.created_at.desc())
            .limit(limit)
        )
        return list(session.scalars(stmt).all())

    def _ensure_credits(self, session: Session, ctx: AuthContext, request: CompletionRequest) -> None:
        if self.check_credits(session, ctx.user_id):
            return
        account = self._require_account(session, ctx.user_id)
        observe_credit_charge("insufficient")
        logger.info("credits.insufficient", extra={"user_id": ctx.actor_id, "model": request.model})
        raise InsufficientCredits(
            details={"balance": account.credit_balance, "credit_floor": account.credit_floor}
        )

    @contextmanager
    def _provider_span(self, request: CompletionRequest, operation_type: str) -> Iterator[None]:
        started = time.perf_counter()
        with provider_call_span(request.model, operation_type):
            try:
                yield
            finally:
                observe_provider_call(request.model, time.perf_counter() - started)

    def _subscription_id(self, session: Session, user_id: uuid.UUID) -> uuid.UUID | None:
        stmt = (
            select(BillingSubscription.id)
            .where(
                BillingSubscription.user_id == user_id,
                BillingSubscription.status.in_(_ACTIVE_SUBSCRIPTION_STATUSES),
            )
            .order_by(BillingSubscription.created_at.desc())
            .limit(1)
        )
        return session.scalar(stmt)

    def _require_account(self, session: Session, user_id: uuid.UUID, *, for_update: bool = False) -> UserAccount:
        account = self.accounts.get_account(session, user_id, for_update=for_update)
        if account is None:
            raise NotFound("Account not found")
        return account


credit_ledger = CreditLedger()
