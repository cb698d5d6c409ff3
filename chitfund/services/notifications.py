"""
Notification hand-off.
The engine only builds (recipient, message, template) payloads; delivery
belongs to whichever Messenger is plugged in.
"""
import logging
from dataclasses import dataclass, asdict
from datetime import date
from typing import Iterable, Protocol

import httpx
from sqlalchemy.orm import Session

from chitfund import config
from chitfund.models import ChitGroup, GroupStatus, Membership, PaymentState, User
from chitfund.services.reconciliation import reconcile

logger = logging.getLogger("chitfund.notifications")

TEMPLATE_OVERDUE = "payment_overdue"
TEMPLATE_HIGH_RISK = "high_risk_alert"


@dataclass(frozen=True)
class OutboundMessage:
    recipient: str
    message: str
    template: str

    def as_dict(self) -> dict:
        return asdict(self)


class Messenger(Protocol):
    def send(self, message: OutboundMessage) -> bool: ...


class LoggingMessenger:
    """Default messenger: writes the payload to the log and reports success."""

    def send(self, message: OutboundMessage) -> bool:
        logger.info(f"[{message.template}] to {message.recipient}: {message.message}")
        return True


class WebhookMessenger:
    """POSTs each payload as JSON to a messaging gateway (WhatsApp/SMS bridge)."""

    def __init__(self, url: str, timeout: float = 10):
        self.url = url
        self.timeout = timeout

    def send(self, message: OutboundMessage) -> bool:
        try:
            resp = httpx.post(self.url, json=message.as_dict(), timeout=self.timeout)
            if resp.status_code < 300:
                return True
            logger.error(f"Messaging gateway rejected {message.template} for {message.recipient}: "
                         f"HTTP {resp.status_code}")
            return False
        except httpx.HTTPError as exc:
            logger.error(f"Messaging gateway unreachable: {exc}")
            return False


def get_messenger() -> Messenger:
    if config.MESSAGING_WEBHOOK_URL:
        return WebhookMessenger(config.MESSAGING_WEBHOOK_URL)
    return LoggingMessenger()


def dispatch(messenger: Messenger, messages: Iterable[OutboundMessage]) -> int:
    """Send every payload; returns how many the messenger accepted."""
    return sum(1 for m in messages if messenger.send(m))


# ═══════════════════════════════════════════════
#  PAYLOAD BUILDERS
# ═══════════════════════════════════════════════

def _recipient(user: User) -> str:
    return user.phone or f"user:{user.id}"


def build_overdue_reminder(user: User, group: ChitGroup, cycle: int, due_date: date, fine: float) -> OutboundMessage:
    text = (
        f"Hi {user.name}, your contribution of ₹{group.contribution_amount:,.0f} for "
        f"{group.name} cycle {cycle} was due on {due_date.isoformat()}."
    )
    if fine > 0:
        text += f" A late fine of ₹{fine:,.0f} applies."
    return OutboundMessage(recipient=_recipient(user), message=text, template=TEMPLATE_OVERDUE)


def build_high_risk_alert(user: User, missed_payments: int, consecutive_fines: int) -> OutboundMessage:
    text = (
        f"{user.name} (#{user.id}) is now high risk: {missed_payments} late payments, "
        f"{consecutive_fines} fined in a row."
    )
    return OutboundMessage(recipient=_recipient(user), message=text, template=TEMPLATE_HIGH_RISK)


def build_overdue_reminders(db: Session, as_of: date) -> list[OutboundMessage]:
    """Reminders for every member of an active group whose open cycle is overdue."""
    messages = []
    groups = db.query(ChitGroup).filter(ChitGroup.status == GroupStatus.ACTIVE).order_by(ChitGroup.id).all()
    for group in groups:
        cycle = min(group.current_cycle + 1, group.duration)
        memberships = db.query(Membership).filter(Membership.group_id == group.id).order_by(Membership.member_id).all()
        for membership in memberships:
            state = reconcile(db, membership.member_id, group.id, cycle, as_of)
            if state.status != PaymentState.OVERDUE:
                continue
            user = db.get(User, membership.member_id)
            messages.append(build_overdue_reminder(user, group, cycle, state.due_date, state.fine))
    return messages
