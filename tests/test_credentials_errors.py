import pytest

import credentials
from config import build_system_instruction, get_client_api_key
from credentials import CLIENT, PROXY, resolve_credentials
from errors import ConfigurationError, ConnectionTimeoutError, describe_transport_error
from session import is_closing_turn


@pytest.fixture
def no_keys(monkeypatch):
    for name in ("GEMINI_API_KEY", "GOOGLE_API_KEY", "GEMINI_STATUS_URL", "GEMINI_PROXY_URL"):
        monkeypatch.delenv(name, raising=False)


def test_placeholder_key_is_unusable(no_keys, monkeypatch):
    monkeypatch.setenv("GEMINI_API_KEY", "PLACEHOLDER_GEMINI_API_KEY")
    assert get_client_api_key() is None
    monkeypatch.setenv("GOOGLE_API_KEY", "real")
    monkeypatch.delenv("GEMINI_API_KEY")
    assert get_client_api_key() == "real"


async def test_client_key_preferred(no_keys, monkeypatch):
    monkeypatch.setenv("GEMINI_API_KEY", "abc")
    creds = await resolve_credentials()
    assert creds.mode == CLIENT and creds.api_key == "abc"


async def test_no_key_and_no_probe_fails(no_keys):
    with pytest.raises(ConfigurationError):
        await resolve_credentials()


async def test_server_key_enables_proxy_mode(no_keys, monkeypatch):
    async def probe(url, timeout=5.0):
        return True

    monkeypatch.setattr(credentials, "probe_server_key", probe)
    creds = await resolve_credentials("http://localhost/api/gemini-status", "http://localhost/api/gemini-proxy")
    assert creds.mode == PROXY
    assert creds.proxy_url == "http://localhost/api/gemini-proxy"


async def test_probe_reporting_absent_key_fails(no_keys, monkeypatch):
    async def probe(url, timeout=5.0):
        return False

    monkeypatch.setattr(credentials, "probe_server_key", probe)
    with pytest.raises(ConfigurationError):
        await resolve_credentials("http://localhost/status", "http://localhost/proxy")


@pytest.mark.parametrize(
    "error,message",
    [
        (RuntimeError("401 API key not valid"), "Invalid API key. Please try again."),
        (RuntimeError("429 quota"), "API quota exceeded. Please try again."),
        (OSError("network unreachable"), "Network connection failed. Please try again."),
        (RuntimeError("boom"), "Connection failed. Please try again."),
        (ConnectionTimeoutError(), ConnectionTimeoutError.user_message),
    ],
)
def test_transport_error_messages(error, message):
    assert describe_transport_error(error) == message


@pytest.mark.parametrize(
    "text,expected",
    [
        ("Thank you for ordering!", True),
        ("آپ کا بہت شکریہ", True),
        ("Your DELIVERY will arrive in 40 minutes", True),
        ("Allah Hafiz", True),
        ("Would you like a drink?", False),
    ],
)
def test_closing_cues(text, expected):
    assert is_closing_turn(text) is expected


def test_instruction_mentions_menu_token_and_zones(settings):
    settings.pizzas = []
    text = build_system_instruction(settings)
    assert '"Cheesy Occean Pizza"' in text
    assert "***TERMINATE_SESSION***" in text
    assert "None available" in text
    assert "**Delivery Zones:** Downtown, DHA." in text
