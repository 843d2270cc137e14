"""
Shared pytest fixtures: in-memory document store and FastAPI TestClient.

The Gemini call is replaced per test through the `model_output` fixture, so
no test needs network access or an API key.
"""
import base64
import os

# Must be set before the app (and its rate limiter) is imported
os.environ["USE_IN_MEMORY"] = "1"
os.environ["EXTRACT_RATE_LIMIT"] = "1000/minute"

import pytest
from fastapi.testclient import TestClient

from receiptwise import persistence
from receiptwise.graph.nodes import extraction
from receiptwise.main import app

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64
USER = "user-alice"


@pytest.fixture(autouse=True)
def _reset_store():
    persistence.reset_in_memory_store()
    yield
    persistence.reset_in_memory_store()


@pytest.fixture()
def png_data_uri():
    return "data:image/png;base64," + base64.b64encode(PNG_BYTES).decode()


@pytest.fixture()
def freshmart_output():
    return {
        "merchant": "FreshMart",
        "amount": 75.42,
        "date": "2024-03-01",
        "category": "Groceries",
        "description": "Weekly grocery run",
        "is_business_expense": False,
        "items": [
            {"name": "Organic eggs", "price": 6.49},
            {"name": "Salmon fillet", "price": 18.99},
        ],
    }


@pytest.fixture()
def model_output(monkeypatch, freshmart_output):
    """Replace the Gemini call; tests may mutate `calls` / `response`."""

    class FakeModel:
        def __init__(self):
            self.calls = []
            self.response = freshmart_output
            self.error = None

        def __call__(self, photo_data_uri):
            self.calls.append(photo_data_uri)
            if self.error is not None:
                raise self.error
            return self.response

    fake = FakeModel()
    monkeypatch.setattr(extraction, "_call_extraction_model", fake)
    return fake


@pytest.fixture()
def client():
    with TestClient(app) as c:
        c.headers.update({"X-User-Id": USER})
        yield c
