"""
Merging model output with caller overrides.
"""
from datetime import date
from decimal import Decimal
from itertools import combinations

import pytest

from receiptwise.graph.nodes.reconcile import OVERRIDABLE_FIELDS, reconcile, set_business_expense
from receiptwise.graph.state import (
    Category,
    ExtractedReceiptData,
    ExtractionOverrides,
    ReceiptDraft,
    TaxCategory,
)


@pytest.fixture()
def extracted(freshmart_output):
    return ExtractedReceiptData.model_validate(freshmart_output)


OVERRIDE_VALUES = {
    "merchant": "Fresh Mart Downtown",
    "amount": Decimal("80.00"),
    "date": date(2024, 3, 2),
    "category": Category.OTHER,
    "description": "Groceries and household bits",
}


def test_category_override_wins(extracted):
    result = reconcile(extracted, ExtractionOverrides(category="Other"))
    assert result.category is Category.OTHER
    assert result.merchant == "FreshMart"
    assert result.amount == Decimal("75.42")
    assert result.date == date(2024, 3, 1)
    assert result.description == "Weekly grocery run"
    assert result.is_business_expense is False
    assert result.tax_category is None


def test_no_overrides_returns_model_output(extracted):
    assert reconcile(extracted, None) == extracted
    assert reconcile(extracted, ExtractionOverrides()) == extracted


@pytest.mark.parametrize("size", range(len(OVERRIDABLE_FIELDS) + 1))
def test_every_supplied_override_takes_precedence(extracted, size):
    for fields in combinations(OVERRIDABLE_FIELDS, size):
        overrides = ExtractionOverrides(**{f: OVERRIDE_VALUES[f] for f in fields})
        result = reconcile(extracted, overrides)
        for field in OVERRIDABLE_FIELDS:
            expected = OVERRIDE_VALUES[field] if field in fields else getattr(extracted, field)
            assert getattr(result, field) == expected, field


def test_blank_overrides_fall_back_to_model(extracted):
    result = reconcile(extracted, ExtractionOverrides(merchant="", description="   ", date=""))
    assert result.merchant == "FreshMart"
    assert result.description == "Weekly grocery run"
    assert result.date == date(2024, 3, 1)


def test_classification_and_items_always_come_from_model(extracted):
    result = reconcile(extracted, ExtractionOverrides(**OVERRIDE_VALUES))
    assert result.is_business_expense == extracted.is_business_expense
    assert result.items == extracted.items


def test_reconcile_does_not_mutate_input(extracted):
    reconcile(extracted, ExtractionOverrides(merchant="Other Shop"))
    assert extracted.merchant == "FreshMart"


class TestSetBusinessExpense:
    def test_turning_off_clears_tax_category(self):
        draft = ReceiptDraft(
            merchant="Staples",
            amount="42.10",
            date="2024-05-14",
            category="Other",
            description="Printer paper",
            is_business_expense=True,
            tax_category="Office Supplies",
        )
        updated = set_business_expense(draft, False)
        assert updated.is_business_expense is False
        assert updated.tax_category is None
        assert draft.tax_category is TaxCategory.OFFICE_SUPPLIES

    def test_turning_on_sets_tax_category(self, extracted):
        updated = set_business_expense(extracted, True, TaxCategory.OTHER_BUSINESS_EXPENSE)
        assert updated.is_business_expense is True
        assert updated.tax_category is TaxCategory.OTHER_BUSINESS_EXPENSE
