"""
Pytest configuration and shared fixtures.

Test settings are put in the environment before any wa_inbox import so the
module-level settings and engine pick them up.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_wa_inbox.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("WHATSAPP_VERIFY_TOKEN", "test_verify_token")
os.environ.setdefault("DEFAULT_COUNTRY_CODE", "91")

import httpx
import pytest
from fastapi.testclient import TestClient

# Clear settings cache before any app imports to ensure test env vars are used
from wa_inbox.config import get_settings
get_settings.cache_clear()

from wa_inbox import models  # noqa: E402,F401
from wa_inbox.main import app, get_provider_client  # noqa: E402
from wa_inbox.provider import ProviderClient  # noqa: E402
from wa_inbox.storage import Base, SessionLocal, create_profile, engine  # noqa: E402


TEST_VERIFY_TOKEN = os.environ["WHATSAPP_VERIFY_TOKEN"]
PHONE_NUMBER_ID = "106540352242922"
OTHER_PHONE_NUMBER_ID = "209871234567890"


@pytest.fixture(scope="function")
def client():
    """Test client with fresh tables for each test."""
    Base.metadata.create_all(bind=engine)

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db(client):
    """A separate session for arranging and inspecting rows."""
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def profile(db):
    """A tenant with a fully configured WhatsApp number."""
    return create_profile(
        db,
        full_name="Acme Store",
        whatsapp_access_token="EAAtesttoken",
        whatsapp_phone_number_id=PHONE_NUMBER_ID,
        whatsapp_business_account_id="102290129340398",
    )


@pytest.fixture
def other_profile(db):
    return create_profile(
        db,
        full_name="Other Shop",
        whatsapp_access_token="EAAothertoken",
        whatsapp_phone_number_id=OTHER_PHONE_NUMBER_ID,
        whatsapp_business_account_id="309876543210987",
    )


@pytest.fixture
def provider_requests(client):
    """
    Route provider calls to an in-memory handler.

    Tests set `provider_requests.handler` to a function taking an
    httpx.Request and returning an httpx.Response; every request seen is
    appended to the fixture list.
    """
    class Recorder(list):
        handler = None

    recorder = Recorder()

    def dispatch(request: httpx.Request) -> httpx.Response:
        recorder.append(request)
        return recorder.handler(request)

    app.dependency_overrides[get_provider_client] = lambda: ProviderClient(
        base_url="https://graph.test",
        api_version="v17.0",
        transport=httpx.MockTransport(dispatch),
    )
    return recorder


def make_delivery(
    phone_number_id: str = PHONE_NUMBER_ID,
    messages=None,
    statuses=None,
    field: str = "messages",
    obj: str = "whatsapp_business_account",
    entry_id: str = "102290129340398",
) -> dict:
    """Build a Cloud API webhook body with one entry and one change."""
    value = {
        "messaging_product": "whatsapp",
        "metadata": {
            "display_phone_number": "15550001111",
            "phone_number_id": phone_number_id,
        },
    }
    if messages is not None:
        value["messages"] = messages
    if statuses is not None:
        value["statuses"] = statuses

    return {
        "object": obj,
        "entry": [{"id": entry_id, "changes": [{"field": field, "value": value}]}],
    }


def text_message(from_id: str = "15551234567", message_id: str = "wamid.abc", body: str = "hi",
                 timestamp: str = "1700000000") -> dict:
    return {
        "from": from_id,
        "id": message_id,
        "timestamp": timestamp,
        "type": "text",
        "text": {"body": body},
    }
