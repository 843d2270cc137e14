"""
State and domain schema for the ReceiptWise backend.

This file defines strict Pydantic models for receipts, the transient output of
the extraction workflow, user overrides and budgets. The extraction workflow's
audit log is annotated with an additive reducer (operator.add) so each graph
node can append entries without overwriting prior logs.
"""

from __future__ import annotations

import datetime as dt
import operator
import re
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Annotated, Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


# ---- Utility ----
TWO_DP = Decimal("0.01")
MAX_LINE_ITEMS = 5
_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def quantize(value: Decimal) -> Decimal:
	"""Round a currency value to cents the way receipts print them."""
	return value.quantize(TWO_DP, rounding=ROUND_HALF_UP)


def _to_decimal(v: Any) -> Any:
	# floats go through str() so 75.42 stays 75.42
	if isinstance(v, float):
		return Decimal(str(v))
	return v


def _check_iso_date(v: Any) -> Any:
	if not isinstance(v, str):
		return v
	v = v.strip()
	if not v:
		return None
	if not _ISO_DATE.match(v):
		raise ValueError("date must be formatted as YYYY-MM-DD")
	return v


class Category(str, Enum):
	"""General spending categories."""

	GROCERIES = "Groceries"
	TRANSPORT = "Transport"
	ENTERTAINMENT = "Entertainment"
	UTILITIES = "Utilities"
	DINING = "Dining"
	OTHER = "Other"


class TaxCategory(str, Enum):
	"""Tax categories for business expenses."""

	OFFICE_SUPPLIES = "Office Supplies"
	MEALS_ENTERTAINMENT = "Meals & Entertainment"
	BUSINESS_TRAVEL = "Business Travel"
	SOFTWARE_SUBSCRIPTIONS = "Software & Subscriptions"
	UTILITIES = "Utilities"
	VEHICLE_EXPENSES = "Vehicle Expenses"
	HOME_OFFICE = "Home Office"
	OTHER_BUSINESS_EXPENSE = "Other Business Expense"


class AuditEvent(BaseModel):
	"""An entry describing a node's action during extraction.

	Accumulated via the additive reducer on ExtractionState.audit_log.
	"""

	timestamp: dt.datetime = Field(default_factory=lambda: dt.datetime.now(dt.timezone.utc))
	node: str = Field(..., description="Graph node that produced this event")
	message: str = Field(..., description="Human-readable description")
	details: Optional[Dict] = Field(
		default=None, description="Optional structured payload for debugging"
	)


class LineItem(BaseModel):
	"""A significant line item printed on the receipt."""

	name: str = Field(..., min_length=1)
	price: Decimal = Field(..., description="Item price, non-negative")

	_coerce_price = field_validator("price", mode="before")(_to_decimal)

	@field_validator("price")
	@classmethod
	def _validate_price(cls, v: Decimal) -> Decimal:
		if v < Decimal("0"):
			raise ValueError("price must be non-negative")
		return v


class _ReceiptFields(BaseModel):
	"""Fields shared by extracted data, drafts and stored receipts."""

	merchant: str = Field(..., min_length=1)
	amount: Decimal = Field(..., description="Receipt total, strictly positive")
	date: dt.date
	category: Category
	description: str = ""
	is_business_expense: bool = False
	tax_category: Optional[TaxCategory] = None
	items: Optional[List[LineItem]] = Field(default=None, max_length=MAX_LINE_ITEMS)

	_coerce_amount = field_validator("amount", mode="before")(_to_decimal)
	_check_date = field_validator("date", mode="before")(_check_iso_date)

	@field_validator("merchant")
	@classmethod
	def _strip_merchant(cls, v: str) -> str:
		v = v.strip()
		if not v:
			raise ValueError("merchant must be non-empty")
		return v

	@field_validator("amount")
	@classmethod
	def _validate_amount(cls, v: Decimal) -> Decimal:
		if not v.is_finite():
			raise ValueError("amount must be a finite number")
		if v <= Decimal("0"):
			raise ValueError("amount must be positive")
		return v

	@field_validator("items")
	@classmethod
	def _empty_items_to_none(cls, v: Optional[List[LineItem]]) -> Optional[List[LineItem]]:
		# no clear itemization -> field omitted
		return v or None


class ExtractedReceiptData(_ReceiptFields):
	"""Structured output of the extraction model, before the user confirms it.

	Every field the model is asked for is required except tax_category and
	items; a response that leaves one out is rejected, never defaulted.

	- tax_category is present if and only if is_business_expense is true.
	- description must not simply restate the category name.
	"""

	description: str = Field(...)
	is_business_expense: bool = Field(...)

	@model_validator(mode="after")
	def _validate_contract(self) -> "ExtractedReceiptData":
		if self.is_business_expense and self.tax_category is None:
			raise ValueError("tax_category is required for a business expense")
		if not self.is_business_expense and self.tax_category is not None:
			raise ValueError("tax_category must be omitted unless is_business_expense is true")
		if self.description.strip().lower() == self.category.value.lower():
			raise ValueError("description must not be the same as the category name")
		return self


class ReceiptDraft(_ReceiptFields):
	"""A receipt as confirmed or edited by the user, without identity.

	Turning is_business_expense off clears tax_category; turning it on
	requires one.
	"""

	@model_validator(mode="after")
	def _validate_tax_category(self) -> "ReceiptDraft":
		if not self.is_business_expense:
			self.tax_category = None
		elif self.tax_category is None:
			raise ValueError("tax_category is required for a business expense")
		return self


class Receipt(ReceiptDraft):
	"""A stored receipt owned by exactly one user."""

	id: str = Field(..., min_length=1)


class ExtractionOverrides(BaseModel):
	"""Caller-supplied values that take precedence over the model's output.

	Blank strings mean "not provided". An amount, when given, must be
	positive; a zero amount is rejected rather than ignored.
	"""

	merchant: Optional[str] = None
	amount: Optional[Decimal] = None
	date: Optional[dt.date] = None
	category: Optional[Category] = None
	description: Optional[str] = None

	@field_validator("merchant", "amount", "date", "category", "description", mode="before")
	@classmethod
	def _blank_to_none(cls, v: Any) -> Any:
		if isinstance(v, str) and not v.strip():
			return None
		return v

	_coerce_amount = field_validator("amount", mode="before")(_to_decimal)
	_check_date = field_validator("date", mode="before")(_check_iso_date)

	@field_validator("merchant", "description")
	@classmethod
	def _strip_text(cls, v: Optional[str]) -> Optional[str]:
		return v.strip() if v is not None else None

	@field_validator("amount")
	@classmethod
	def _validate_amount(cls, v: Optional[Decimal]) -> Optional[Decimal]:
		if v is None:
			return v
		if not v.is_finite() or v <= Decimal("0"):
			raise ValueError("override amount must be a positive number")
		return v

	def provided(self) -> Dict[str, Any]:
		"""Return only the override fields the caller actually supplied."""
		return {k: v for k, v in self.model_dump().items() if v is not None}


class BudgetUpdate(BaseModel):
	"""Payload for setting one category's monthly ceiling (0 clears it)."""

	amount: Decimal = Field(...)

	_coerce_amount = field_validator("amount", mode="before")(_to_decimal)

	@field_validator("amount")
	@classmethod
	def _validate_amount(cls, v: Decimal) -> Decimal:
		if not v.is_finite() or v < Decimal("0"):
			raise ValueError("budget must be a non-negative number")
		return v


def default_budgets() -> Dict[Category, Decimal]:
	return {c: Decimal("0") for c in Category}


# Values for ExtractionState.error_kind
INPUT_INVALID = "input_invalid"
IMAGE_TOO_LARGE = "image_too_large"
MODEL_FAILURE = "model_failure"


class ExtractionState(BaseModel):
	"""State tracked across the extraction workflow for a single request.

	Notes:
	- audit_log uses operator.add as its reducer.
	- error/error_kind are set by the first node that fails; the graph then
	  routes straight to the end.
	"""

	photo_data_uri: str = Field(..., description="Receipt image as a base64 data URI")
	overrides: Optional[ExtractionOverrides] = Field(default=None)
	mime_type: Optional[str] = Field(default=None)
	raw_output: Optional[Dict[str, Any]] = Field(
		default=None, description="Parsed JSON returned by the model"
	)
	extracted: Optional[ExtractedReceiptData] = Field(default=None)
	result: Optional[ExtractedReceiptData] = Field(
		default=None, description="Model output merged with the caller's overrides"
	)
	error: Optional[str] = Field(default=None)
	error_kind: Optional[str] = Field(default=None)
	current_node: Optional[str] = Field(default=None)
	audit_log: Annotated[List[AuditEvent], operator.add] = Field(default_factory=list)
