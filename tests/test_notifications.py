from datetime import date

import httpx

from chitfund import config
from chitfund.models import PaymentMode
from chitfund.services import notifications
from chitfund.services.notifications import (
    LoggingMessenger, OutboundMessage, WebhookMessenger, build_overdue_reminders, dispatch, get_messenger,
)
from chitfund.services.reconciliation import record_collection


def test_reminders_only_for_overdue_members(db, make_group):
    ctx = make_group()
    paid, late, _ = ctx.members
    record_collection(db, paid.id, ctx.group.id, 1, 33333, date(2024, 1, 10), PaymentMode.CASH,
                      receipt_number="N-1", approve=True)

    assert build_overdue_reminders(db, date(2024, 1, 12)) == []

    messages = build_overdue_reminders(db, date(2024, 1, 25))
    recipients = [m.recipient for m in messages]
    assert paid.phone not in recipients
    assert late.phone in recipients
    assert len(messages) == 2
    reminder = messages[recipients.index(late.phone)]
    assert reminder.template == notifications.TEMPLATE_OVERDUE
    assert "2024-01-15" in reminder.message
    assert "250" in reminder.message


def test_pending_groups_get_no_reminders(db, make_group):
    make_group(activate=False)
    assert build_overdue_reminders(db, date(2024, 3, 1)) == []


def test_webhook_messenger_posts_payload(monkeypatch):
    calls = []

    def fake_post(url, json, timeout):
        calls.append((url, json))
        return httpx.Response(202)

    monkeypatch.setattr(notifications.httpx, "post", fake_post)
    messenger = WebhookMessenger("https://gateway.example/send")
    message = OutboundMessage("9848012345", "hello", notifications.TEMPLATE_HIGH_RISK)
    assert messenger.send(message)
    assert calls == [("https://gateway.example/send",
                      {"recipient": "9848012345", "message": "hello", "template": "high_risk_alert"})]


def test_webhook_failures_are_reported(monkeypatch):
    def refused(url, json, timeout):
        raise httpx.ConnectError("connection refused")

    monkeypatch.setattr(notifications.httpx, "post", refused)
    messenger = WebhookMessenger("https://gateway.example/send")
    assert not messenger.send(OutboundMessage("1", "x", "t"))

    monkeypatch.setattr(notifications.httpx, "post", lambda url, json, timeout: httpx.Response(500))
    assert dispatch(messenger, [OutboundMessage("1", "x", "t")]) == 0


def test_messenger_selection(monkeypatch):
    monkeypatch.setattr(config, "MESSAGING_WEBHOOK_URL", "")
    assert isinstance(get_messenger(), LoggingMessenger)
    monkeypatch.setattr(config, "MESSAGING_WEBHOOK_URL", "https://gateway.example/send")
    assert isinstance(get_messenger(), WebhookMessenger)
    assert dispatch(LoggingMessenger(), [OutboundMessage("1", "x", "t")] * 3) == 3
