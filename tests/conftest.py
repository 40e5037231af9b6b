"""
Pytest configuration and shared fixtures.

Required settings get test defaults here, and the settings cache is cleared
before any app import so these values are the ones used.
"""

import os

import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("VERIFY_TOKEN", "test-verify-token")
os.environ.setdefault("WA_TOKEN", "test-wa-token")
os.environ.setdefault("WA_PHONE_NUMBER_ID", "1234567890")
os.environ.setdefault("STORE_BACKEND", "memory")

from inbox_relay.config import Settings, get_settings  # noqa: E402
from inbox_relay.errors import UpstreamError  # noqa: E402
from inbox_relay.main import create_app  # noqa: E402
from inbox_relay.storage import MemoryConversationStore, SqlConversationStore  # noqa: E402

get_settings.cache_clear()

TEST_APP_SECRET = "test-app-secret"


class FakeCloudClient:
    """Stands in for CloudApiClient; records calls and replays canned replies."""

    def __init__(self, reply=None, error=None):
        self.reply = reply if reply is not None else {
            "messaging_product": "whatsapp",
            "contacts": [{"input": "5511999999999", "wa_id": "5511999999999"}],
            "messages": [{"id": "wamid.ABC"}],
        }
        self.error = error
        self.calls = []

    def send_text(self, to, body):
        self.calls.append((to, body))
        if self.error is not None:
            raise self.error
        return self.reply

    def close(self):
        pass


class FakeClock:
    def __init__(self, now=1700000500):
        self.now = now

    def __call__(self):
        return self.now


def make_settings(**overrides) -> Settings:
    values = {
        "VERIFY_TOKEN": "test-verify-token",
        "WA_TOKEN": "test-wa-token",
        "WA_PHONE_NUMBER_ID": "1234567890",
        "STORE_BACKEND": "memory",
        "LOG_LEVEL": "WARNING",
        "WA_APP_SECRET": None,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture(params=["memory", "sql"])
def store(request, tmp_path):
    """Each store test runs against both backends."""
    if request.param == "memory":
        yield MemoryConversationStore()
        return
    sql_store = SqlConversationStore(f"sqlite:///{tmp_path / 'inbox.sqlite'}")
    sql_store.init_schema()
    yield sql_store
    sql_store.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cloud_client():
    return FakeCloudClient()


@pytest.fixture
def upstream_failure():
    return UpstreamError(
        "Cloud API rejected the message (400)",
        status_code=400,
        payload={"error": {"message": "Invalid parameter", "code": 100}},
    )


@pytest.fixture
def memory_store():
    return MemoryConversationStore()


@pytest.fixture
def client(memory_store, cloud_client):
    """Test client over an in-memory store and a fake Cloud API."""
    app = create_app(settings=make_settings(), store=memory_store, cloud_client=cloud_client)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def signed_client(memory_store, cloud_client):
    """Test client that requires X-Hub-Signature-256 on webhook deliveries."""
    app = create_app(
        settings=make_settings(WA_APP_SECRET=TEST_APP_SECRET),
        store=memory_store,
        cloud_client=cloud_client,
    )
    with TestClient(app) as test_client:
        yield test_client


def text_message_delivery(sender="5511999999999", body="hello", ts="1700000000",
                          wa_msg_id="wamid.IN1", name="Maria"):
    """A one-message delivery as the Cloud API sends it."""
    return {
        "object": "whatsapp_business_account",
        "entry": [{
            "id": "WABA_ID",
            "changes": [{
                "field": "messages",
                "value": {
                    "messaging_product": "whatsapp",
                    "metadata": {"display_phone_number": "15550000000", "phone_number_id": "1234567890"},
                    "contacts": [{"wa_id": sender, "profile": {"name": name}}],
                    "messages": [{
                        "from": sender,
                        "id": wa_msg_id,
                        "timestamp": ts,
                        "type": "text",
                        "text": {"body": body},
                    }],
                },
            }],
        }],
    }


def status_delivery(wa_msg_id="wamid.ABC", status="delivered", ts="1700000100",
                    recipient="5511999999999", errors=None):
    """A one-status delivery as the Cloud API sends it."""
    status_obj = {
        "id": wa_msg_id,
        "status": status,
        "timestamp": ts,
        "recipient_id": recipient,
    }
    if errors is not None:
        status_obj["errors"] = errors
    return {
        "object": "whatsapp_business_account",
        "entry": [{
            "id": "WABA_ID",
            "changes": [{"field": "messages", "value": {"statuses": [status_obj]}}],
        }],
    }
