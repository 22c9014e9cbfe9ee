import json
from datetime import datetime

import httpx
import pytest

from gemini_service import GeminiService
from library import Library

FIXED_NOW = datetime(2024, 5, 20, 9, 30)


def _gemini_reply(payload, status_code=200):
    """A generateContent response whose single candidate carries ``payload`` as JSON text"""
    text = payload if isinstance(payload, str) else json.dumps(payload)
    return httpx.Response(status_code, json={"candidates": [{"content": {"parts": [{"text": text}]}}]})


@pytest.fixture
def fixed_now():
    return FIXED_NOW


@pytest.fixture
def lib():
    # Seeded session with a frozen clock so due dates are predictable
    return Library.with_seed_data(clock=lambda: FIXED_NOW)


@pytest.fixture
def empty_lib():
    return Library(clock=lambda: FIXED_NOW)


@pytest.fixture
def gemini_reply():
    return _gemini_reply


@pytest.fixture
def make_gemini():
    """Build a GeminiService whose requests are answered by ``handler(request)``"""
    def factory(handler, api_key="test-key", enabled=True):
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return GeminiService(api_key=api_key, client=client, enabled=enabled)
    return factory


@pytest.fixture(autouse=True)
def plain_output(monkeypatch):
    monkeypatch.setenv("LIB_CLI_OUTPUT", "plain")
