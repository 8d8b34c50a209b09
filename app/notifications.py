from __future__ import annotations

import logging
from typing import Any

from app.core.celery_app import celery_app
from app.core.config import get_settings
from app.core.events import InternalEvent, event_bus


logger = logging.getLogger("app.notifications")

NOTIFICATION_EVENT_TYPES = ("team.invitation.created", "enterprise.claim.issued")

_subscribed = False


def deliver_email(to: str, subject: str, body: str) -> None:
    # Links carry claim and invitation tokens; only recipient and subject are logged.
    logger.info("notification.sent", extra={"recipient": to, "subject": subject})


@celery_app.task(name="app.tasks.send_notification")
def send_notification(to: str, subject: str, body: str) -> None:
    deliver_email(to, subject, body)


def render_notification(event_type: str, payload: dict[str, Any]) -> tuple[str, str] | None:
    enterprise_name = payload.get("enterprise_name") or "an enterprise"
    link = payload.get("link")
    if not link:
        return None
    if event_type == "team.invitation.created":
        subject = f"You're invited to join {enterprise_name}"
        body = (
            f"You have been invited to join {enterprise_name} as {payload.get('role', 'viewer')}.\n\n"
            f"Accept the invitation: {link}\n\nThis link expires in {get_settings().invitation_ttl_days} days."
        )
        return subject, body
    if event_type == "enterprise.claim.issued":
        greeting = f"Hi {payload['recipient_name']},\n\n" if payload.get("recipient_name") else ""
        subject = f"Claim your {enterprise_name} profile"
        body = (
            f"{greeting}{enterprise_name} has been listed in our directory. "
            f"Claim the profile to manage it: {link}\n\n"
            f"This link expires in {get_settings().claim_ttl_days} days."
        )
        return subject, body
    return None


def dispatch_notification(event: InternalEvent) -> None:
    payload = event.payload if isinstance(event.payload, dict) else {}
    recipient = payload.get("recipient")
    rendered = render_notification(event.name, payload)
    if not isinstance(recipient, str) or rendered is None:
        return
    subject, body = rendered
    try:
        if get_settings().celery_task_always_eager:
            send_notification.apply(args=(recipient, subject, body))
        else:
            send_notification.delay(recipient, subject, body)
    except Exception as exc:
        # The committed change stands when the broker is unreachable.
        logger.exception(
            "notification.dispatch_failed",
            extra={"event_name": event.name, "recipient": recipient, "error": str(exc)[:500]},
        )


def register_notification_handlers() -> None:
    global _subscribed
    if _subscribed:
        return
    for event_name in NOTIFICATION_EVENT_TYPES:
        event_bus.subscribe(event_name, dispatch_notification)
    _subscribed = True
