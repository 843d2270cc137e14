"""
End-to-end extraction graph with the Gemini call stubbed out.
"""
from datetime import date
from decimal import Decimal

import pytest

from receiptwise.graph.nodes.extraction import ExtractionError, ImageTooLargeError, InputInvalidError
from receiptwise.graph.state import Category, ExtractionOverrides
from receiptwise.graph.workflow import run_extraction


def test_extraction_with_category_override(model_output, png_data_uri):
    result = run_extraction(png_data_uri, ExtractionOverrides(category="Other"))

    assert model_output.calls == [png_data_uri]
    assert result.merchant == "FreshMart"
    assert result.amount == Decimal("75.42")
    assert result.date == date(2024, 3, 1)
    assert result.category is Category.OTHER
    assert result.description == "Weekly grocery run"
    assert result.is_business_expense is False
    assert result.tax_category is None


def test_extraction_without_overrides(model_output, png_data_uri):
    result = run_extraction(png_data_uri)
    assert result.category is Category.GROCERIES
    assert [item.name for item in result.items] == ["Organic eggs", "Salmon fillet"]


def test_invalid_image_never_reaches_model(model_output):
    with pytest.raises(InputInvalidError):
        run_extraction("data:text/plain;base64,aGVsbG8=")
    with pytest.raises(InputInvalidError):
        run_extraction("")
    assert model_output.calls == []


def test_oversized_image(monkeypatch, model_output, png_data_uri):
    monkeypatch.setenv("MAX_IMAGE_BYTES", "16")
    with pytest.raises(ImageTooLargeError):
        run_extraction(png_data_uri)
    assert model_output.calls == []


def test_model_failure_is_not_retried(model_output, png_data_uri):
    model_output.error = RuntimeError("503 service unavailable")
    with pytest.raises(ExtractionError, match="AI processing failed"):
        run_extraction(png_data_uri)
    assert len(model_output.calls) == 1


def test_schema_violation_is_a_model_failure(model_output, png_data_uri, freshmart_output):
    model_output.response = {**freshmart_output, "category": "Household"}
    with pytest.raises(ExtractionError):
        run_extraction(png_data_uri, ExtractionOverrides(category="Other"))
