"""
Reconciliation of WhatsApp Cloud API webhook deliveries into the store.

A delivery looks like:

    {"object": "whatsapp_business_account",
     "entry": [{"changes": [{"value": {
         "contacts": [{"wa_id": "...", "profile": {"name": "..."}}],
         "messages": [{"from": "...", "id": "wamid...", "timestamp": "1700000000",
                       "type": "text", "text": {"body": "hello"}}],
         "statuses": [{"id": "wamid...", "status": "delivered",
                       "timestamp": "1700000100", "recipient_id": "...",
                       "errors": [{"code": 131026, "title": "...", "detail": "..."}]}]
     }}]}]}

Every message and every status in the delivery is applied independently.
A broken item is logged and skipped; it never aborts the rest of the batch.
"""

import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from inbox_relay.errors import MalformedEvent
from inbox_relay.metrics import record_webhook_event
from inbox_relay.storage import (
    DIRECTION_IN,
    DIRECTION_SYSTEM,
    ConversationStore,
    MessageRecord,
)

logger = logging.getLogger(__name__)

WHATSAPP_OBJECT = "whatsapp_business_account"

STATUS_RECEIVED = "received"
STATUS_FAILED = "failed"
CONFIRMED_STATUSES = {"sent", "delivered", "read"}

# Cloud API error codes meaning the recipient cannot be reached on WhatsApp
NO_ACCOUNT_ERROR_CODES = {131026, 131047}
NO_ACCOUNT_PHRASES = (
    "not a valid WhatsApp user",
    "Recipient phone number not in WhatsApp",
)
NO_ACCOUNT_TEXT = "Recipient has no WhatsApp account"


@dataclass
class ReconcileReport:
    """Counts of what one delivery did to the store."""
    messages: int = 0
    statuses: int = 0
    skipped: int = 0
    no_account: int = 0
    skipped_by_kind: Counter = field(default_factory=Counter)

    def skip(self, kind: str) -> None:
        self.skipped += 1
        self.skipped_by_kind[kind] += 1


def _dig(data: Any, *path: str) -> Any:
    """Walk nested dicts, returning None as soon as a step is missing."""
    for key in path:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


def _as_list(value: Any) -> list:
    return value if isinstance(value, list) else []


# Priority-ordered text extraction: the first rule yielding a non-empty
# string wins; when none does, a placeholder naming the type is used.
TEXT_RULES = (
    ("text", "body"),
    ("interactive", "list_reply", "title"),
    ("interactive", "button_reply", "title"),
    ("button", "text"),
    ("image", "caption"),
    ("video", "caption"),
    ("document", "caption"),
)


def extract_text(message: dict) -> str:
    for path in TEXT_RULES:
        value = _dig(message, *path)
        if isinstance(value, str) and value:
            return value
    msg_type = message.get("type")
    if isinstance(msg_type, str) and msg_type:
        return f"({msg_type} message)"
    return "(message)"


def parse_epoch(value: Any) -> Optional[int]:
    """Epoch seconds from a string or number; None when absent or unusable."""
    if isinstance(value, bool) or value is None:
        return None
    try:
        seconds = int(float(value))
    except (TypeError, ValueError, OverflowError):
        return None
    return seconds if seconds > 0 else None


def contact_name(value: dict, sender: str) -> Optional[str]:
    """Profile name of the contact matching the sender, else of the first contact."""
    contacts = [c for c in _as_list(value.get("contacts")) if isinstance(c, dict)]
    for contact in contacts:
        if contact.get("wa_id") == sender:
            return _dig(contact, "profile", "name") or None
    if contacts:
        return _dig(contacts[0], "profile", "name") or None
    return None


def _error_code(error: dict) -> Optional[int]:
    try:
        return int(error.get("code"))
    except (TypeError, ValueError):
        return None


def is_no_account_error(error: dict) -> bool:
    if _error_code(error) in NO_ACCOUNT_ERROR_CODES:
        return True
    detail = error.get("detail") or error.get("title") or ""
    if not isinstance(detail, str):
        return False
    return any(phrase in detail for phrase in NO_ACCOUNT_PHRASES)


class WebhookReconciler:
    """Applies webhook deliveries to a ConversationStore."""

    def __init__(self, store: ConversationStore, clock: Callable[[], float] = time.time):
        self.store = store
        self.clock = clock

    def _now(self) -> int:
        return int(self.clock())

    def _event_ts(self, raw: Any) -> int:
        ts = parse_epoch(raw)
        return ts if ts is not None else self._now()

    def process(self, payload: Any) -> ReconcileReport:
        """
        Apply every message and status in a delivery.

        Raises:
            MalformedEvent: payload is not a WhatsApp Business Account delivery
        """
        if not isinstance(payload, dict):
            raise MalformedEvent(f"Expected a JSON object, got {type(payload).__name__}")
        if payload.get("object") != WHATSAPP_OBJECT:
            raise MalformedEvent(f"Unsupported webhook object: {payload.get('object')!r}")

        report = ReconcileReport()
        for entry in _as_list(payload.get("entry")):
            for change in _as_list(_dig(entry, "changes")):
                value = _dig(change, "value")
                if not isinstance(value, dict):
                    report.skip("change")
                    continue
                for message in _as_list(value.get("messages")):
                    self._apply(report, "message", self.apply_message, value, message)
                for status in _as_list(value.get("statuses")):
                    self._apply(report, "status", self.apply_status, status)

        record_webhook_event("message", "applied", report.messages)
        record_webhook_event("status", "applied", report.statuses)
        for kind, count in report.skipped_by_kind.items():
            record_webhook_event(kind, "skipped", count)
        record_webhook_event("status", "no_account", report.no_account)
        logger.info(
            f"Delivery reconciled: messages={report.messages}, statuses={report.statuses}, "
            f"skipped={report.skipped}, no_account={report.no_account}"
        )
        return report

    def _apply(self, report: ReconcileReport, kind: str, handler: Callable, *args) -> None:
        try:
            handler(report, *args)
        except Exception:
            report.skip(kind)
            logger.exception(f"Skipping malformed {kind} in webhook delivery")

    def apply_message(self, report: ReconcileReport, value: dict, message: dict) -> None:
        """Record one inbound message as in/received."""
        sender = message.get("from")
        if not sender or not isinstance(sender, str):
            logger.warning(f"Inbound message without sender skipped: id={message.get('id')}")
            report.skip("message")
            return

        ts = self._event_ts(message.get("timestamp"))
        self.store.ensure_conversation(sender, contact_name(value, sender), ts)
        self.store.append_message(sender, MessageRecord(
            direction=DIRECTION_IN,
            text=extract_text(message),
            status=STATUS_RECEIVED,
            ts=ts,
            wa_msg_id=message.get("id") or None,
        ))
        report.messages += 1
        logger.debug(f"Inbound message stored: from={sender}, type={message.get('type')}")

    def apply_status(self, report: ReconcileReport, status: dict) -> None:
        """Update the message a status callback refers to and surface failures."""
        wa_msg_id = status.get("id")
        label = status.get("status")
        if not wa_msg_id or not label:
            logger.warning(f"Status without id or label skipped: {status!r}")
            report.skip("status")
            return

        ts = self._event_ts(status.get("timestamp"))
        recipient = status.get("recipient_id") or None

        matched = self.store.update_message_status(wa_msg_id, label, ts)
        if recipient:
            self.store.ensure_conversation(recipient, None, ts)
        report.statuses += 1
        if not matched:
            logger.debug(f"Status for unknown message: id={wa_msg_id}, status={label}")

        if label == STATUS_FAILED:
            self._handle_failure(report, status, recipient, ts)
        elif label in CONFIRMED_STATUSES:
            logger.info(f"Message to {recipient} confirmed ({label})")
        else:
            logger.info(f"Unrecognized status for {recipient}: {label}")

    def _handle_failure(
        self, report: ReconcileReport, status: dict, recipient: Optional[str], ts: int
    ) -> None:
        errors = [e for e in _as_list(status.get("errors")) if isinstance(e, dict)]
        error = errors[0] if errors else {}
        reason = error.get("detail") or error.get("title") or error.get("code")

        if not (error and is_no_account_error(error)):
            logger.warning(f"Send to {recipient} failed: {reason}")
            return
        if not recipient:
            logger.warning(f"No-account failure without recipient: {reason}")
            return

        # Recorded as its own system message because the failing message id
        # may never have been stored locally. A replayed callback finds the
        # notice already there and adds nothing.
        appended = self.store.append_message_once(recipient, MessageRecord(
            direction=DIRECTION_SYSTEM,
            text=NO_ACCOUNT_TEXT,
            status=STATUS_FAILED,
            ts=ts,
        ))
        if appended:
            logger.warning(f"{recipient} has no WhatsApp account ({reason})")
            report.no_account += 1
        else:
            logger.debug(f"No-account notice for {recipient} already recorded")
