from __future__ import annotations

import json
from collections.abc import Generator, Iterator

from fastapi import APIRouter, Depends, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from app.billing.ledger import credit_ledger
from app.billing.provider import AIProvider, CompletionRequest, get_ai_provider
from app.billing.schemas import AICompletionRequest, AICompletionResponse, CreditStatusRead, UsageRecordRead, WebhookAck
from app.billing.webhooks import payment_webhook_service, verify_stripe_event
from app.core.config import get_settings
from app.core.database import get_db
from app.platform.security.context import AuthContext
from app.platform.security.errors import AIRequestFailed
from app.platform.security.gate import get_auth_context


ai_router = APIRouter(prefix="/api/ai", tags=["ai"])
router = APIRouter(prefix="/api/billing", tags=["billing"])


def _sse(payload: dict[str, object] | str) -> str:
    data = payload if isinstance(payload, str) else json.dumps(payload)
    return f"data: {data}\n\n"


def _sse_stream(deltas: Generator[str, None, None]) -> Iterator[str]:
    try:
        for delta in deltas:
            yield _sse({"content": delta})
    except AIRequestFailed as exc:
        yield _sse({"error": {"code": exc.code, "message": exc.message}})
        return
    finally:
        # Closing the inner stream settles the charge when the client disconnects.
        deltas.close()
    yield _sse("[DONE]")


@ai_router.post("/completions", response_model=AICompletionResponse)
def create_completion(
    payload: AICompletionRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
    provider: AIProvider = Depends(get_ai_provider),
):
    request = CompletionRequest(
        model=payload.model or get_settings().ai_default_model,
        messages=[message.model_dump(exclude_none=True) for message in payload.messages],
        max_completion_tokens=payload.max_completion_tokens,
        temperature=payload.temperature,
        response_format=payload.response_format,
        tools=payload.tools,
        tool_choice=payload.tool_choice,
    )

    if payload.stream:
        deltas = credit_ledger.stream_with_billing(
            db,
            ctx,
            provider,
            request,
            payload.operation_type,
            entity_type=payload.entity_type,
            entity_id=payload.entity_id,
        )
        return StreamingResponse(_sse_stream(deltas), media_type="text/event-stream")

    billed = credit_ledger.call_with_billing(
        db,
        ctx,
        provider,
        request,
        payload.operation_type,
        entity_type=payload.entity_type,
        entity_id=payload.entity_id,
    )
    return AICompletionResponse(
        id=billed.result.id,
        model=billed.result.model,
        content=billed.result.content,
        tool_calls=billed.result.tool_calls,
        cost=billed.cost,
        tokens_prompt=billed.tokens_prompt,
        tokens_completion=billed.tokens_completion,
        estimated=billed.estimated,
        usage_record_id=billed.usage_record_id,
    )


@router.get("/credits", response_model=CreditStatusRead)
def get_credit_status(
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> CreditStatusRead:
    return CreditStatusRead.model_validate(credit_ledger.credit_status(db, ctx))


@router.get("/usage", response_model=list[UsageRecordRead], response_model_by_alias=True)
def list_usage(
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> list[UsageRecordRead]:
    return [UsageRecordRead.model_validate(item) for item in credit_ledger.usage_history(db, ctx, limit)]


@router.post("/webhooks/stripe", response_model=WebhookAck)
async def stripe_webhook(request: Request, db: Session = Depends(get_db)) -> WebhookAck:
    payload = await request.body()
    # Only the body read needs the event loop; verification and the ledger writes are blocking.
    event = await run_in_threadpool(verify_stripe_event, payload, request.headers.get("stripe-signature"))
    outcome = await run_in_threadpool(payment_webhook_service.handle, db, event)
    return WebhookAck(outcome=outcome)
