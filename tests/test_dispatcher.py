"""
Tests for the outbound dispatcher and the Cloud API client.

Tests cover:
- Successful sends recorded as out/sent
- Required field validation
- Upstream rejections and transport failures
- Unexpected response shapes
- Status callbacks reaching a dispatched message
"""

import pytest
import requests

from conftest import FakeCloudClient, status_delivery
from inbox_relay.cloud_api import CloudApiClient
from inbox_relay.dispatcher import OutboundDispatcher, provider_message_id
from inbox_relay.errors import InvalidArgument, UpstreamError
from inbox_relay.reconciler import WebhookReconciler

PHONE = "5511999999999"


@pytest.fixture
def dispatcher(store, cloud_client, clock):
    return OutboundDispatcher(store, cloud_client, clock=clock)


class TestProviderMessageId:

    def test_standard_response(self):
        assert provider_message_id({"messages": [{"id": "wamid.ABC"}]}) == "wamid.ABC"

    @pytest.mark.parametrize("data", [
        {},
        {"messages": []},
        {"messages": "wamid.ABC"},
        {"messages": [{"message_status": "accepted"}]},
        {"messages": [{"id": ""}]},
        ["wamid.ABC"],
        None,
    ])
    def test_unexpected_shapes(self, data):
        assert provider_message_id(data) is None


class TestSend:
    """OutboundDispatcher.send on every backend."""

    def test_send_records_out_message(self, dispatcher, store, cloud_client, clock):
        result = dispatcher.send(PHONE, "hi")

        assert result.provider_message_id == "wamid.ABC"
        assert cloud_client.calls == [(PHONE, "hi")]
        conv = store.get_conversation(PHONE)
        assert conv.last_ts == clock.now
        [message] = conv.messages
        assert message.direction == "out"
        assert message.status == "sent"
        assert message.text == "hi"
        assert message.wa_msg_id == "wamid.ABC"
        assert message.ts == clock.now

    def test_keyed_by_destination_not_echo(self, store, clock):
        client = FakeCloudClient(reply={
            "contacts": [{"input": PHONE, "wa_id": "551199999999"}],
            "messages": [{"id": "wamid.ABC"}],
        })
        OutboundDispatcher(store, client, clock=clock).send(PHONE, "hi")

        assert store.get_conversation(PHONE) is not None
        assert store.get_conversation("551199999999") is None

    def test_missing_id_still_recorded(self, store, clock):
        client = FakeCloudClient(reply={"unexpected": True})

        result = OutboundDispatcher(store, client, clock=clock).send(PHONE, "hi")

        assert result.provider_message_id is None
        [message] = store.get_conversation(PHONE).messages
        assert message.wa_msg_id is None
        assert message.status == "sent"

    def test_existing_name_kept(self, dispatcher, store):
        store.ensure_conversation(PHONE, "Maria", 1700000000)
        dispatcher.send(PHONE, "hi")
        assert store.get_conversation(PHONE).name == "Maria"

    @pytest.mark.parametrize("to,text", [
        (None, "hi"),
        ("", "hi"),
        ("   ", "hi"),
        (PHONE, None),
        (PHONE, ""),
        (5511999999999, "hi"),
    ])
    def test_invalid_arguments(self, dispatcher, store, cloud_client, to, text):
        with pytest.raises(InvalidArgument):
            dispatcher.send(to, text)
        assert cloud_client.calls == []
        assert store.list_conversations() == []

    def test_upstream_error_propagates(self, store, clock, upstream_failure):
        client = FakeCloudClient(error=upstream_failure)
        dispatcher = OutboundDispatcher(store, client, clock=clock)

        with pytest.raises(UpstreamError) as exc_info:
            dispatcher.send(PHONE, "hi")

        assert exc_info.value.payload == {"error": {"message": "Invalid parameter", "code": 100}}
        assert store.list_conversations() == []


def test_send_then_delivered_status(store, cloud_client, clock):
    """A status callback finds the message the dispatcher recorded."""
    OutboundDispatcher(store, cloud_client, clock=clock).send(PHONE, "hi")

    WebhookReconciler(store, clock=clock).process(
        status_delivery("wamid.ABC", "delivered", "1700000600", PHONE)
    )

    [message] = store.get_conversation(PHONE).messages
    assert message.status == "delivered"
    assert message.ts == 1700000600


# =============================================================================
# Cloud API client
# =============================================================================

class FakeResponse:
    def __init__(self, status_code, data=None, text=""):
        self.status_code = status_code
        self._data = data
        self.text = text

    @property
    def ok(self):
        return 200 <= self.status_code < 400

    def json(self):
        if self._data is None:
            raise ValueError("No JSON object could be decoded")
        return self._data


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.requests = []

    def post(self, url, **kwargs):
        self.requests.append((url, kwargs))
        if self.error is not None:
            raise self.error
        return self.response

    def close(self):
        pass


def make_client(session):
    return CloudApiClient(
        api_base="https://graph.facebook.com/v20.0/",
        phone_number_id="1234567890",
        token="secret-token",
        timeout=5,
        session=session,
    )


class TestCloudApiClient:

    def test_request_shape(self):
        session = FakeSession(FakeResponse(200, {"messages": [{"id": "wamid.ABC"}]}))

        data = make_client(session).send_text(PHONE, "hi")

        assert data == {"messages": [{"id": "wamid.ABC"}]}
        [(url, kwargs)] = session.requests
        assert url == "https://graph.facebook.com/v20.0/1234567890/messages"
        assert kwargs["json"] == {
            "messaging_product": "whatsapp",
            "to": PHONE,
            "type": "text",
            "text": {"body": "hi"},
        }
        assert kwargs["headers"]["Authorization"] == "Bearer secret-token"
        assert kwargs["timeout"] == 5

    def test_error_payload_kept_verbatim(self):
        error_body = {"error": {"message": "(#131030) Recipient phone number not in allowed list",
                                "type": "OAuthException", "code": 131030}}
        session = FakeSession(FakeResponse(400, error_body))

        with pytest.raises(UpstreamError) as exc_info:
            make_client(session).send_text(PHONE, "hi")

        assert exc_info.value.status_code == 400
        assert exc_info.value.payload == error_body

    def test_non_json_error_body(self):
        session = FakeSession(FakeResponse(500, None, text="<html>Bad Gateway</html>"))

        with pytest.raises(UpstreamError) as exc_info:
            make_client(session).send_text(PHONE, "hi")

        assert exc_info.value.payload == {"_raw": "<html>Bad Gateway</html>"}

    def test_timeout_surfaces_as_upstream_error(self):
        session = FakeSession(error=requests.Timeout("read timed out"))

        with pytest.raises(UpstreamError) as exc_info:
            make_client(session).send_text(PHONE, "hi")

        assert exc_info.value.status_code == 503
        assert "read timed out" in exc_info.value.payload["error"]
