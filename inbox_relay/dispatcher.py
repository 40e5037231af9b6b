import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from inbox_relay.cloud_api import CloudApiClient
from inbox_relay.errors import InvalidArgument, UpstreamError
from inbox_relay.metrics import record_outbound_send
from inbox_relay.storage import DIRECTION_OUT, ConversationStore, MessageRecord

logger = logging.getLogger(__name__)

STATUS_SENT = "sent"


@dataclass
class SendResult:
    provider_message_id: Optional[str]


def provider_message_id(data: Any) -> Optional[str]:
    """`messages[0].id` from a send response, or None for any other shape."""
    if not isinstance(data, dict):
        return None
    messages = data.get("messages")
    if not isinstance(messages, list) or not messages or not isinstance(messages[0], dict):
        return None
    wa_msg_id = messages[0].get("id")
    return wa_msg_id if isinstance(wa_msg_id, str) and wa_msg_id else None


def _require(value: Any, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidArgument(f"Missing field: {field_name}")
    return value


class OutboundDispatcher:
    """Sends a text message through the provider and records it as out/sent."""

    def __init__(
        self,
        store: ConversationStore,
        client: CloudApiClient,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.client = client
        self.clock = clock

    def send(self, to: Any, text: Any) -> SendResult:
        """
        Raises:
            InvalidArgument: `to` or `text` missing or blank
            UpstreamError: the provider rejected or failed the send
        """
        try:
            to = _require(to, "to")
            text = _require(text, "text")
        except InvalidArgument:
            record_outbound_send("invalid_argument")
            raise

        try:
            data = self.client.send_text(to, text)
        except UpstreamError:
            record_outbound_send("upstream_error")
            raise

        wa_msg_id = provider_message_id(data)
        if wa_msg_id is None:
            logger.warning(f"Send to {to} accepted without a message id: {data}")

        # Keyed by the number we sent to, not whatever the response echoes back
        ts = int(self.clock())
        self.store.ensure_conversation(to, None, ts)
        self.store.append_message(to, MessageRecord(
            direction=DIRECTION_OUT,
            text=text,
            status=STATUS_SENT,
            ts=ts,
            wa_msg_id=wa_msg_id,
        ))
        record_outbound_send("sent")
        logger.info(f"Message sent to {to}: id={wa_msg_id}")
        return SendResult(provider_message_id=wa_msg_id)
