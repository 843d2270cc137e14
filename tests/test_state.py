"""
Validation rules of the receipt models.
"""
from datetime import date
from decimal import Decimal

import pytest
from pydantic import ValidationError

from receiptwise.graph.state import (
    BudgetUpdate,
    Category,
    ExtractedReceiptData,
    ExtractionOverrides,
    LineItem,
    Receipt,
    ReceiptDraft,
    TaxCategory,
)

BASE = {
    "merchant": "Staples",
    "amount": "42.10",
    "date": "2024-05-14",
    "category": "Other",
    "description": "Printer paper and toner",
    "is_business_expense": True,
    "tax_category": "Office Supplies",
}


class TestExtractedReceiptData:
    def test_valid_business_expense(self):
        data = ExtractedReceiptData.model_validate(BASE)
        assert data.amount == Decimal("42.10")
        assert data.date == date(2024, 5, 14)
        assert data.tax_category is TaxCategory.OFFICE_SUPPLIES

    def test_float_amount_keeps_its_printed_value(self):
        data = ExtractedReceiptData.model_validate({**BASE, "amount": 75.42})
        assert data.amount == Decimal("75.42")

    def test_business_expense_requires_tax_category(self):
        with pytest.raises(ValidationError):
            ExtractedReceiptData.model_validate({**BASE, "tax_category": None})

    def test_tax_category_rejected_on_personal_expense(self):
        with pytest.raises(ValidationError):
            ExtractedReceiptData.model_validate({**BASE, "is_business_expense": False})

    @pytest.mark.parametrize("field,value", [
        ("category", "Shopping"),
        ("tax_category", "Gifts"),
    ])
    def test_values_outside_enumerations_are_rejected(self, field, value):
        with pytest.raises(ValidationError):
            ExtractedReceiptData.model_validate({**BASE, field: value})

    def test_description_must_not_restate_category(self):
        with pytest.raises(ValidationError):
            ExtractedReceiptData.model_validate({**BASE, "description": "other"})

    @pytest.mark.parametrize("value", ["05/14/2024", "2024-5-14", "May 14, 2024", "2024-02-30"])
    def test_date_must_be_iso(self, value):
        with pytest.raises(ValidationError):
            ExtractedReceiptData.model_validate({**BASE, "date": value})

    @pytest.mark.parametrize("amount", ["0", "-3.50", "NaN", "abc"])
    def test_amount_must_be_positive_number(self, amount):
        with pytest.raises(ValidationError):
            ExtractedReceiptData.model_validate({**BASE, "amount": amount})

    def test_at_most_five_items(self):
        items = [{"name": f"item {i}", "price": i} for i in range(6)]
        with pytest.raises(ValidationError):
            ExtractedReceiptData.model_validate({**BASE, "items": items})

    def test_empty_items_are_omitted(self):
        data = ExtractedReceiptData.model_validate({**BASE, "items": []})
        assert data.items is None


def test_line_item_price_cannot_be_negative():
    with pytest.raises(ValidationError):
        LineItem(name="Refund", price=-1)


class TestReceiptDraft:
    def test_turning_business_off_clears_tax_category(self):
        draft = ReceiptDraft.model_validate({**BASE, "is_business_expense": False})
        assert draft.tax_category is None

    def test_turning_business_on_requires_tax_category(self):
        with pytest.raises(ValidationError):
            ReceiptDraft.model_validate({**BASE, "tax_category": None})

    def test_user_may_describe_with_category_name(self):
        draft = ReceiptDraft.model_validate({**BASE, "description": "Other"})
        assert draft.description == "Other"

    def test_receipt_requires_id(self):
        with pytest.raises(ValidationError):
            Receipt.model_validate({**BASE, "id": ""})


class TestExtractionOverrides:
    def test_blank_strings_mean_not_provided(self):
        overrides = ExtractionOverrides(merchant="  ", description="", date="", category="")
        assert overrides.provided() == {}

    @pytest.mark.parametrize("amount", ["", "   "])
    def test_blank_amount_means_not_provided(self, amount):
        assert ExtractionOverrides(amount=amount).provided() == {}

    def test_zero_amount_is_rejected(self):
        with pytest.raises(ValidationError):
            ExtractionOverrides(amount=0)

    def test_provided_fields(self):
        overrides = ExtractionOverrides(amount="12.5", category="Dining", merchant=" Cafe ")
        assert overrides.provided() == {
            "amount": Decimal("12.5"),
            "category": Category.DINING,
            "merchant": "Cafe",
        }


def test_budget_update_rejects_negative():
    with pytest.raises(ValidationError):
        BudgetUpdate(amount=-1)
    assert BudgetUpdate(amount=0).amount == Decimal("0")
