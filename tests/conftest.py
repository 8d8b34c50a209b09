from __future__ import annotations

from typing import Any

import pytest

from app import notifications
from app.core import events


@pytest.fixture()
def published_events(monkeypatch: pytest.MonkeyPatch) -> list[dict[str, Any]]:
    recorded: list[dict[str, Any]] = []
    publish = events.publish

    def record(envelope: dict[str, Any]) -> dict[str, Any]:
        recorded.append(publish(envelope))
        return envelope

    monkeypatch.setattr(events, "publish", record)
    return recorded


@pytest.fixture()
def sent_notifications(monkeypatch: pytest.MonkeyPatch) -> list[dict[str, str]]:
    sent: list[dict[str, str]] = []

    def deliver(to: str, subject: str, body: str) -> None:
        sent.append({"to": to, "subject": subject, "body": body})

    monkeypatch.setattr(notifications, "deliver_email", deliver)
    return sent
