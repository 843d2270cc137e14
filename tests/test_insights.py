"""
Spending insights with the model call stubbed.
"""
import json
from datetime import date

import pytest

from receiptwise import insights
from receiptwise.graph.state import Receipt


@pytest.fixture()
def receipts():
    return [
        Receipt(id="r1", merchant="Bistro", amount="42.00", date=date(2024, 3, 2),
                category="Dining", description="Dinner with friends"),
        Receipt(id="r2", merchant="Metro", amount="2.75", date=date(2024, 3, 3),
                category="Transport", is_business_expense=True, tax_category="Business Travel"),
    ]


def test_no_receipts_returns_fixed_message(monkeypatch):
    def fail(_):
        raise AssertionError("model must not be called")

    monkeypatch.setattr(insights, "_call_insights_model", fail)
    assert insights.generate_spending_insights([]) == insights.NO_DATA_MESSAGE


def test_spending_data_is_flattened(receipts):
    records = json.loads(insights.spending_data_json(receipts))
    assert records[0] == {
        "merchant": "Bistro",
        "amount": "42.00",
        "date": "2024-03-02",
        "category": "Dining",
        "description": "Dinner with friends",
    }
    assert "tax_category" not in records[1]


def test_returns_model_text(monkeypatch, receipts):
    seen = []

    def fake(spending_data):
        seen.append(spending_data)
        return "  You spend most on Dining. Try cooking at home twice a week.\n"

    monkeypatch.setattr(insights, "_call_insights_model", fake)
    text = insights.generate_spending_insights(receipts)
    assert text == "You spend most on Dining. Try cooking at home twice a week."
    assert "Bistro" in seen[0]


@pytest.mark.parametrize("behaviour", ["raise", "empty"])
def test_failures_raise_insights_error(monkeypatch, receipts, behaviour):
    def fake(_):
        if behaviour == "raise":
            raise RuntimeError("quota exceeded")
        return "   "

    monkeypatch.setattr(insights, "_call_insights_model", fake)
    with pytest.raises(insights.InsightsError):
        insights.generate_spending_insights(receipts)
