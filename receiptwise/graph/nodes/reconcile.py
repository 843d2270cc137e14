"""
Reconcile node: merge the model's output with the caller's overrides.

The merge is pure and synchronous. For merchant, amount, date, category and
description a supplied override wins; otherwise the model's value is kept.
The business-expense flag, tax category and line items always come from the
model.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, TypeVar

from receiptwise.graph.state import (
    AuditEvent,
    ExtractedReceiptData,
    ExtractionOverrides,
    ExtractionState,
    ReceiptDraft,
    TaxCategory,
)

logger = logging.getLogger(__name__)

OVERRIDABLE_FIELDS = ("merchant", "amount", "date", "category", "description")

_Draft = TypeVar("_Draft", ExtractedReceiptData, ReceiptDraft)


def reconcile(
    extracted: ExtractedReceiptData,
    overrides: Optional[ExtractionOverrides] = None,
) -> ExtractedReceiptData:
    """Return the final record with overrides taking strict precedence."""
    if overrides is None:
        return extracted.model_copy()

    update = {k: v for k, v in overrides.provided().items() if k in OVERRIDABLE_FIELDS}
    if not update:
        return extracted.model_copy()
    # model_copy skips validation: overrides were validated on the way in and
    # the description rule only binds what the model produced
    return extracted.model_copy(update=update)


def set_business_expense(
    draft: _Draft,
    flag: bool,
    tax_category: Optional[TaxCategory] = None,
) -> _Draft:
    """Toggle the business-expense flag; turning it off clears the tax category."""
    update: Dict[str, Any] = {"is_business_expense": flag}
    if not flag:
        update["tax_category"] = None
    elif tax_category is not None:
        update["tax_category"] = tax_category
    return draft.model_copy(update=update)


def reconcile_node(state: ExtractionState) -> Dict[str, Any]:
    """LangGraph node: apply caller overrides to the extracted receipt."""
    extracted = state.extracted
    if extracted is None:
        # extract_node always sets either extracted or error
        return {"current_node": "reconcile"}

    result = reconcile(extracted, state.overrides)
    overridden = sorted(state.overrides.provided()) if state.overrides else []
    if overridden:
        logger.info("Applied caller overrides: %s", ", ".join(overridden))

    return {
        "current_node": "reconcile",
        "result": result,
        "audit_log": [
            AuditEvent(
                node="reconcile",
                message="merged model output with caller overrides",
                details={"overridden_fields": overridden},
            )
        ],
    }
