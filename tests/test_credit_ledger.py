from __future__ import annotations

import uuid
from collections.abc import Generator, Iterator

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.billing.ledger import credit_ledger
from app.billing.models import AiUsageRecord, BillingSubscription
from app.billing.provider import CompletionRequest, CompletionResult, ProviderError, StreamChunk, TokenUsage
from app.core.auth import AuthUser
from app.core.database import Base
from app.platform.accounts.models import UserAccount
from app.platform.accounts.service import account_service
from app.platform.security.context import AuthContext
from app.platform.security.errors import AIRequestFailed, InsufficientCredits, NotFound


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


class FakeProvider:
    def __init__(
        self,
        *,
        content: str = "Hello world",
        usage: TokenUsage | None = TokenUsage(prompt_tokens=1000, completion_tokens=500, total_tokens=1500),
        chunks: list[StreamChunk] | None = None,
        fail: bool = False,
        fail_after: int | None = None,
    ) -> None:
        self.content = content
        self.usage = usage
        self.chunks = chunks if chunks is not None else [StreamChunk(id="chk", content="Hello"), StreamChunk(id="chk", content=" world")]
        self.fail = fail
        self.fail_after = fail_after
        self.calls = 0

    def complete(self, request: CompletionRequest) -> CompletionResult:
        self.calls += 1
        if self.fail:
            raise ProviderError("upstream timeout")
        return CompletionResult(id="cmpl-1", model=request.model, content=self.content, usage=self.usage)

    def stream(self, request: CompletionRequest) -> Iterator[StreamChunk]:
        self.calls += 1
        for index, chunk in enumerate(self.chunks):
            if self.fail_after is not None and index >= self.fail_after:
                raise ProviderError("stream reset")
            yield chunk


def _account(db: Session, **fields: object) -> UserAccount:
    fields.setdefault("email", f"{uuid.uuid4().hex[:8]}@example.com")
    account = UserAccount(**fields)
    db.add(account)
    db.commit()
    return account


def _ctx(db: Session, account: UserAccount) -> AuthContext:
    return account_service.resolve_context(db, AuthUser(sub=str(account.id)))


def _request(**overrides: object) -> CompletionRequest:
    params: dict[str, object] = {"model": "gpt-4o", "messages": [{"role": "user", "content": "Hi"}]}
    params.update(overrides)
    return CompletionRequest(**params)  # type: ignore[arg-type]


def _records(db: Session, user_id: uuid.UUID) -> list[AiUsageRecord]:
    return list(db.scalars(select(AiUsageRecord).where(AiUsageRecord.user_id == user_id)).all())


def test_check_credits_respects_floor(db_session: Session) -> None:
    account = _account(db_session, credit_balance=100)

    assert credit_ledger.check_credits(db_session, account.id) is True
    assert credit_ledger.check_credits(db_session, account.id, 100) is True
    assert credit_ledger.check_credits(db_session, account.id, 101) is False

    empty = _account(db_session, credit_balance=0)
    assert credit_ledger.check_credits(db_session, empty.id) is False


def test_check_credits_with_negative_floor(db_session: Session) -> None:
    account = _account(db_session, credit_balance=0, credit_floor=-50)

    assert credit_ledger.check_credits(db_session, account.id, 50) is True
    assert credit_ledger.check_credits(db_session, account.id, 51) is False


def test_overage_and_platform_admin_always_pass(db_session: Session) -> None:
    overage = _account(db_session, credit_balance=-500, overage_allowed=True)
    admin = _account(db_session, credit_balance=0, platform_role="admin")

    assert credit_ledger.check_credits(db_session, overage.id, 10_000) is True
    assert credit_ledger.check_credits(db_session, admin.id, 10_000) is True


def test_check_is_monotonic_in_estimated_cost(db_session: Session) -> None:
    account = _account(db_session, credit_balance=40, credit_floor=-10)

    results = [credit_ledger.check_credits(db_session, account.id, cost) for cost in range(0, 80, 5)]

    first_denied = results.index(False)
    assert all(results[:first_denied])
    assert not any(results[first_denied:])


def test_check_is_monotonic_in_balance(db_session: Session) -> None:
    account = _account(db_session, credit_balance=0, credit_floor=-10)

    results = []
    for balance in range(-30, 40, 5):
        account.credit_balance = balance
        db_session.commit()
        results.append(credit_ledger.check_credits(db_session, account.id, 15))

    first_allowed = results.index(True)
    assert not any(results[:first_allowed])
    assert all(results[first_allowed:])


def test_large_prompt_still_reaches_the_provider_with_a_positive_balance(db_session: Session) -> None:
    account = _account(db_session, credit_balance=1)
    provider = FakeProvider()

    billed = credit_ledger.call_with_billing(
        db_session,
        _ctx(db_session, account),
        provider,
        _request(messages=[{"role": "user", "content": "x" * 20_000}], max_completion_tokens=10_000),
        "chat",
    )

    assert provider.calls == 1
    assert billed.cost == 1
    db_session.refresh(account)
    assert account.credit_balance == 0


def test_call_with_billing_charges_provider_usage(db_session: Session) -> None:
    account = _account(db_session, credit_balance=100)
    provider = FakeProvider()

    billed = credit_ledger.call_with_billing(db_session, _ctx(db_session, account), provider, _request(), "chat")

    assert billed.cost == 1
    assert billed.estimated is False
    assert billed.result.content == "Hello world"
    db_session.refresh(account)
    assert account.credit_balance == 99

    [record] = _records(db_session, account.id)
    assert record.id == billed.usage_record_id
    assert record.success is True
    assert record.cost == 1
    assert record.tokens_prompt == 1000
    assert record.tokens_completion == 500
    assert record.usage_metadata == {"total_tokens": 1500, "response_id": "cmpl-1", "model": "gpt-4o"}


def test_missing_usage_falls_back_to_estimate(db_session: Session) -> None:
    account = _account(db_session, credit_balance=100)

    billed = credit_ledger.call_with_billing(
        db_session,
        _ctx(db_session, account),
        FakeProvider(usage=None, content="x" * 40),
        _request(),
        "summary",
        entity_type="deal",
        entity_id="deal-7",
    )

    assert billed.estimated is True
    assert billed.tokens_completion == 10
    [record] = _records(db_session, account.id)
    assert record.usage_metadata["estimated"] is True
    assert record.entity_type == "deal"
    assert record.entity_id == "deal-7"


def test_insufficient_credits_skips_the_provider(db_session: Session) -> None:
    account = _account(db_session, credit_balance=0)
    provider = FakeProvider()

    with pytest.raises(InsufficientCredits) as exc_info:
        credit_ledger.call_with_billing(db_session, _ctx(db_session, account), provider, _request(), "chat")

    assert exc_info.value.details == {"balance": 0, "credit_floor": 0}
    assert provider.calls == 0
    assert _records(db_session, account.id) == []


def test_provider_failure_records_a_zero_cost_row(db_session: Session) -> None:
    account = _account(db_session, credit_balance=100)

    with pytest.raises(AIRequestFailed):
        credit_ledger.call_with_billing(db_session, _ctx(db_session, account), FakeProvider(fail=True), _request(), "chat")

    db_session.refresh(account)
    assert account.credit_balance == 100
    [record] = _records(db_session, account.id)
    assert record.success is False
    assert record.cost == 0
    assert record.error_message == "upstream timeout"
    assert record.usage_metadata["error"] == "upstream timeout"


def test_platform_admin_usage_is_logged_but_not_charged(db_session: Session) -> None:
    admin = _account(db_session, credit_balance=0, platform_role="admin")

    billed = credit_ledger.call_with_billing(db_session, _ctx(db_session, admin), FakeProvider(), _request(), "chat")

    db_session.refresh(admin)
    assert admin.credit_balance == 0
    [record] = _records(db_session, admin.id)
    assert record.cost == billed.cost == 1
    assert record.usage_metadata["billing_exempt"] is True


def test_charges_match_successful_usage_rows(db_session: Session) -> None:
    account = _account(db_session, credit_balance=1_000)
    ctx = _ctx(db_session, account)

    for tokens in (10, 2_000, 40_000):
        usage = TokenUsage(prompt_tokens=tokens, completion_tokens=tokens, total_tokens=tokens * 2)
        credit_ledger.call_with_billing(db_session, ctx, FakeProvider(usage=usage), _request(), "chat")
    with pytest.raises(AIRequestFailed):
        credit_ledger.call_with_billing(db_session, ctx, FakeProvider(fail=True), _request(), "chat")

    db_session.refresh(account)
    charged = db_session.scalar(
        select(func.sum(AiUsageRecord.cost)).where(AiUsageRecord.user_id == account.id, AiUsageRecord.success.is_(True))
    )
    assert 1_000 - account.credit_balance == charged
    assert len(_records(db_session, account.id)) == 4


def test_charge_links_active_subscription(db_session: Session) -> None:
    account = _account(db_session, credit_balance=100, plan_type="crm_pro")
    subscription = BillingSubscription(user_id=account.id, plan_type="crm_pro", status="active")
    db_session.add(subscription)
    db_session.commit()

    record = credit_ledger.charge(
        db_session,
        user_id=account.id,
        model="gpt-4o-mini",
        tokens_prompt=100,
        tokens_completion=100,
        operation_type="chat",
    )

    assert record.subscription_id == subscription.id
    assert record.cost == 1


def test_stream_charges_once_after_completion(db_session: Session) -> None:
    account = _account(db_session, credit_balance=100)

    deltas = credit_ledger.stream_with_billing(db_session, _ctx(db_session, account), FakeProvider(), _request(), "chat")
    assert _records(db_session, account.id) == []

    assert list(deltas) == ["Hello", " world"]

    [record] = _records(db_session, account.id)
    assert record.usage_metadata == {"streaming": True, "estimated": True, "chunks_received": 2}
    assert record.tokens_completion == 3
    db_session.refresh(account)
    assert account.credit_balance == 100 - record.cost


def test_stream_closed_early_still_charges_once(db_session: Session) -> None:
    account = _account(db_session, credit_balance=100)
    deltas = credit_ledger.stream_with_billing(db_session, _ctx(db_session, account), FakeProvider(), _request(), "chat")

    assert next(deltas) == "Hello"
    deltas.close()

    [record] = _records(db_session, account.id)
    assert record.success is True
    assert record.usage_metadata["chunks_received"] == 1


def test_stream_counts_tool_arguments(db_session: Session) -> None:
    account = _account(db_session, credit_balance=100)
    chunks = [StreamChunk(id="chk", tool_name="lookup", tool_arguments='{"query": "acme corp"}')]

    deltas = credit_ledger.stream_with_billing(
        db_session, _ctx(db_session, account), FakeProvider(chunks=chunks), _request(), "chat"
    )
    assert list(deltas) == []

    [record] = _records(db_session, account.id)
    assert record.tokens_completion == 6


def test_stream_provider_failure_is_not_charged(db_session: Session) -> None:
    account = _account(db_session, credit_balance=100)
    deltas = credit_ledger.stream_with_billing(
        db_session, _ctx(db_session, account), FakeProvider(fail_after=1), _request(), "chat"
    )

    with pytest.raises(AIRequestFailed):
        list(deltas)

    db_session.refresh(account)
    assert account.credit_balance == 100
    [record] = _records(db_session, account.id)
    assert record.success is False


def test_stream_checks_credits_before_returning(db_session: Session) -> None:
    account = _account(db_session, credit_balance=0)
    provider = FakeProvider()

    with pytest.raises(InsufficientCredits):
        credit_ledger.stream_with_billing(db_session, _ctx(db_session, account), provider, _request(), "chat")
    assert provider.calls == 0


def test_add_credits_for_unknown_account(db_session: Session) -> None:
    with pytest.raises(NotFound):
        credit_ledger.add_credits(db_session, uuid.uuid4(), 100)


def test_credit_status_and_history(db_session: Session) -> None:
    account = _account(db_session, credit_balance=100, monthly_allocation=4200, plan_type="crm_pro")
    ctx = _ctx(db_session, account)
    credit_ledger.call_with_billing(db_session, ctx, FakeProvider(), _request(), "chat")
    credit_ledger.call_with_billing(db_session, ctx, FakeProvider(), _request(), "summary")

    status = credit_ledger.credit_status(db_session, ctx)
    assert status.balance == 98
    assert status.plan_type == "crm_pro"
    assert status.billing_exempt is False

    assert len(credit_ledger.usage_history(db_session, ctx, limit=1)) == 1
    assert {item.operation_type for item in credit_ledger.usage_history(db_session, ctx)} == {"chat", "summary"}
