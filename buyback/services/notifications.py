# buyback/services/notifications.py
"""
Customer / operations notifications.

State transitions never send mail themselves. They return OutboundMessage
objects; the caller writes the transition first and then hands the
messages to NotificationDispatcher:

  - send through the Notifier port
  - on success, merge the message's `after_send` fields onto the order
    (e.g. receivedNotificationSentAt) plus lastCustomerEmailSentAt and an
    "email" activity entry
  - on failure, log and move on (no retries from this engine)
"""

from __future__ import annotations

import html
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from buyback.domain.ports import Notifier, OrderStore
from buyback.obs.metrics import notifications_total
from buyback.services.activity_log import ActivityLogWriter
from buyback.services.order_store import SERVER_TIMESTAMP

logger = logging.getLogger("buyback.notifications")


@dataclass
class OutboundMessage:
    kind: str
    recipient: str
    subject: str
    html_body: str
    text_body: Optional[str] = None
    order_id: Optional[str] = None
    customer: bool = True
    log_message: Optional[str] = None
    log_metadata: Dict[str, Any] = field(default_factory=dict)
    after_send: Dict[str, Any] = field(default_factory=dict)


def customer_email(order: Mapping[str, Any]) -> Optional[str]:
    info = order.get("shippingInfo") if isinstance(order.get("shippingInfo"), Mapping) else {}
    for candidate in (info.get("email"), order.get("email"), order.get("customerEmail")):
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    return None


def customer_name(order: Mapping[str, Any]) -> str:
    info = order.get("shippingInfo") if isinstance(order.get("shippingInfo"), Mapping) else {}
    name = info.get("fullName") or info.get("name")
    return str(name).strip() if name else "there"


def _render(heading: str, paragraphs: Sequence[str]) -> Tuple[str, str]:
    body = "".join(f"<p>{html.escape(p)}</p>" for p in paragraphs)
    html_body = f"<html><body><h2>{html.escape(heading)}</h2>{body}</body></html>"
    text_body = "\n\n".join([heading, *paragraphs])
    return html_body, text_body


def _customer_message(
    order: Mapping[str, Any],
    *,
    kind: str,
    subject: str,
    heading: str,
    paragraphs: Sequence[str],
    log_message: str,
    log_metadata: Optional[Mapping[str, Any]] = None,
    after_send: Optional[Mapping[str, Any]] = None,
) -> Optional[OutboundMessage]:
    recipient = customer_email(order)
    if not recipient:
        logger.info("order %s has no customer email; %s not queued", order.get("id"), kind)
        return None
    html_body, text_body = _render(heading, [f"Hi {customer_name(order)},", *paragraphs])
    return OutboundMessage(
        kind=kind,
        recipient=recipient,
        subject=subject,
        html_body=html_body,
        text_body=text_body,
        order_id=str(order.get("id")),
        log_message=log_message,
        log_metadata=dict(log_metadata or {}),
        after_send=dict(after_send or {}),
    )


# ==========================================================
# Message builders
# ==========================================================


def device_received(order: Mapping[str, Any], *, tracking_number: Optional[str] = None) -> Optional[OutboundMessage]:
    if order.get("receivedNotificationSentAt"):
        return None
    order_id = order.get("id")
    return _customer_message(
        order,
        kind="device_received",
        subject="Your device has arrived",
        heading="We received your device",
        paragraphs=[
            f"Your device for order #{order_id} has arrived at our facility.",
            "Our team will inspect it and follow up with your payout shortly.",
        ],
        log_message="Received confirmation email sent to customer.",
        log_metadata={"trackingNumber": tracking_number, "auto": True},
        after_send={"receivedNotificationSentAt": SERVER_TIMESTAMP},
    )


def order_cancelled(order: Mapping[str, Any], *, reason: str, auto: bool = False) -> Optional[OutboundMessage]:
    order_id = order.get("id")
    paragraphs = [f"Your order #{order_id} has been cancelled."]
    if auto:
        paragraphs.append(
            "We did not see any shipping activity for this order, so the prepaid label was voided."
        )
    paragraphs.append("If you still want to sell your device, you can place a new order at any time.")
    return _customer_message(
        order,
        kind="order_cancelled",
        subject=f"Order #{order_id} cancelled",
        heading="Your order was cancelled",
        paragraphs=paragraphs,
        log_message="Cancellation notice sent to customer.",
        log_metadata={"reason": reason, "auto": auto},
        after_send={"cancellationNotifiedAt": SERVER_TIMESTAMP},
    )


def label_reminder(order: Mapping[str, Any], *, tier: int, age_days: int) -> Optional[OutboundMessage]:
    order_id = order.get("id")
    flag = "labelReminderSecondSentAt" if tier >= 2 else "labelReminderFirstSentAt"
    after_send: Dict[str, Any] = {flag: SERVER_TIMESTAMP, "lastReminderSentAt": SERVER_TIMESTAMP}
    if tier >= 2 and not order.get("labelReminderFirstSentAt"):
        after_send["labelReminderFirstSentAt"] = SERVER_TIMESTAMP
    return _customer_message(
        order,
        kind=f"label_reminder_{tier}",
        subject=f"Reminder: ship your device for order #{order_id}",
        heading="Your prepaid label is waiting",
        paragraphs=[
            f"It has been {age_days} days since we sent the shipping label for order #{order_id}.",
            "Drop the package off with the carrier so we can lock in your offer.",
        ],
        log_message=f"Label reminder #{tier} sent to customer.",
        log_metadata={"tier": tier, "ageDays": age_days},
        after_send=after_send,
    )


def reoffer_created(order: Mapping[str, Any], *, new_price: Any, auto_accept_date: str) -> Optional[OutboundMessage]:
    order_id = order.get("id")
    return _customer_message(
        order,
        kind="reoffer_created",
        subject=f"Updated offer for order #{order_id}",
        heading="We have an updated offer",
        paragraphs=[
            f"After inspecting your device we can offer ${new_price} for order #{order_id}.",
            f"If we do not hear back by {auto_accept_date}, the new offer is accepted automatically.",
        ],
        log_message="Re-offer email sent to customer.",
        log_metadata={"newPrice": new_price},
    )


def reoffer_auto_accepted(
    order: Mapping[str, Any], *, device_keys: Sequence[str], price_text: str = "the revised amount"
) -> Optional[OutboundMessage]:
    order_id = order.get("id")
    amounts = "the revised amounts" if len(device_keys) > 1 else "the revised amount"
    return _customer_message(
        order,
        kind="reoffer_auto_accepted",
        subject=f"Revised offer auto-accepted for order #{order_id}",
        heading="Your updated offer was accepted",
        paragraphs=[
            f"We have not heard back about the revised offer for order #{order_id}, "
            "so it has been accepted automatically.",
            f"Payment processing for {amounts} of {price_text} will now begin.",
        ],
        log_message="Re-offer auto-accept email sent to customer.",
        log_metadata={
            "auto": True,
            "deviceCount": len(device_keys),
            "deviceKeys": ", ".join(device_keys),
            "prices": price_text,
        },
    )


def reoffer_response(order: Mapping[str, Any], *, accepted: bool, device_key: str) -> Optional[OutboundMessage]:
    order_id = order.get("id")
    if accepted:
        return _customer_message(
            order,
            kind="reoffer_accepted",
            subject=f"Offer accepted for order #{order_id}",
            heading="Thanks for accepting the revised offer",
            paragraphs=["We've received your confirmation, and payment processing will now begin."],
            log_message="Re-offer acceptance confirmation email sent to customer.",
            log_metadata={"deviceKey": device_key},
        )
    return _customer_message(
        order,
        kind="reoffer_declined",
        subject=f"Return requested for order #{order_id}",
        heading="Your return request was received",
        paragraphs=[
            "We have received your request to decline the revised offer and have your device returned.",
            "A return shipping label will be sent to your email shortly.",
        ],
        log_message="Return request confirmation email sent to customer.",
        log_metadata={"deviceKey": device_key},
    )


def auto_requote_finalized(order: Mapping[str, Any], *, amount: float) -> Optional[OutboundMessage]:
    order_id = order.get("id")
    return _customer_message(
        order,
        kind="auto_requote",
        subject=f"Order #{order_id} finalized",
        heading="Your order was finalized",
        paragraphs=[
            "We did not receive a response about the issue found with your device.",
            f"Order #{order_id} has been finalized at a reduced payout of ${amount:.2f}.",
        ],
        log_message="Auto requote email sent to customer.",
        log_metadata={"amount": amount},
    )


def sweep_summary(
    recipient: Optional[str],
    *,
    title: str,
    subject: str,
    cancelled: Sequence[Mapping[str, Any]],
    skipped: Sequence[Mapping[str, Any]] = (),
    failed: Sequence[Mapping[str, Any]] = (),
) -> Optional[OutboundMessage]:
    """One consolidated operations message per sweep run."""
    if not recipient:
        return None

    def _lines(label: str, entries: Sequence[Mapping[str, Any]]) -> List[str]:
        if not entries:
            return [f"{label}: none"]
        rows = [f"{label} ({len(entries)}):"]
        for e in entries:
            extra = e.get("reason") or ", ".join(map(str, e.get("labelIds") or []))
            rows.append(f"  - {e.get('orderId')} {extra}".rstrip())
        return rows

    paragraphs = [
        *_lines("Cancelled", cancelled),
        *_lines("Skipped", skipped),
        *_lines("Failed", failed),
    ]
    html_body, text_body = _render(title, paragraphs)
    return OutboundMessage(
        kind="sweep_summary",
        recipient=recipient,
        subject=subject,
        html_body=html_body,
        text_body=text_body,
        customer=False,
    )


# ==========================================================
# Dispatch
# ==========================================================


class NotificationDispatcher:
    def __init__(self, notifier: Notifier, store: Optional[OrderStore] = None) -> None:
        self.notifier = notifier
        self.store = store

    async def dispatch(
        self,
        messages: Iterable[Optional[OutboundMessage]],
        *,
        now: Optional[datetime] = None,
    ) -> int:
        sent = 0
        for msg in messages:
            if msg is None:
                continue
            try:
                await self.notifier.send(msg.recipient, msg.subject, msg.html_body, msg.text_body)
            except Exception:
                notifications_total.labels(msg.kind, "failed").inc()
                logger.exception("notification %s to %s failed (order=%s)", msg.kind, msg.recipient, msg.order_id)
                continue

            sent += 1
            notifications_total.labels(msg.kind, "sent").inc()
            if not (msg.customer and msg.order_id and self.store is not None):
                continue

            fields: Dict[str, Any] = {"lastCustomerEmailSentAt": SERVER_TIMESTAMP, **msg.after_send}
            entries = []
            if msg.log_message:
                entries.append(ActivityLogWriter.entry("email", msg.log_message, metadata=msg.log_metadata))
            try:
                await self.store.merge_write(
                    msg.order_id, fields, log_entries=entries, auto_log_status=False, now=now
                )
            except Exception:
                logger.exception("recording %s for order %s failed", msg.kind, msg.order_id)
        return sent
