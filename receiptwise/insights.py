"""
Spending insights: ask Gemini for advice on the user's spending patterns.

The user's receipts are flattened to merchant/amount/date/category/description
records and sent as JSON alongside a personal-finance-advisor prompt.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Iterable, List

from dotenv import load_dotenv
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_google_genai import ChatGoogleGenerativeAI

from receiptwise.graph.nodes.extraction import DEFAULT_MODEL, response_text
from receiptwise.graph.state import Receipt
from receiptwise.prompts.insights_prompt import INSIGHTS_SYSTEM_PROMPT, INSIGHTS_USER_PROMPT

load_dotenv(override=False)

logger = logging.getLogger(__name__)

NO_DATA_MESSAGE = "You don't have any spending data yet. Upload some receipts to get started!"


class InsightsError(RuntimeError):
    """Raised when the insights model call fails or returns nothing."""


def _get_model() -> ChatGoogleGenerativeAI:
    model_name = os.getenv("INSIGHTS_MODEL") or os.getenv("EXTRACTION_MODEL", DEFAULT_MODEL)
    api_key = os.getenv("GOOGLE_API_KEY")
    if not api_key:
        raise RuntimeError("GOOGLE_API_KEY is not set in environment/.env")

    return ChatGoogleGenerativeAI(
        model=model_name,
        google_api_key=api_key,
        temperature=0.3,
        max_retries=int(os.getenv("MODEL_MAX_RETRIES", "0")),
    )


def spending_data_json(receipts: Iterable[Receipt]) -> str:
    records: List[dict] = [
        r.model_dump(mode="json", include={"merchant", "amount", "date", "category", "description"})
        for r in receipts
    ]
    return json.dumps(records)


def _call_insights_model(spending_data: str) -> str:
    model = _get_model()
    messages = [
        SystemMessage(content=INSIGHTS_SYSTEM_PROMPT),
        HumanMessage(content=INSIGHTS_USER_PROMPT.format(spending_data=spending_data)),
    ]
    response = model.invoke(messages)
    raw_text = response_text(response.content)
    logger.debug("Insights model raw response:\n%s", raw_text)
    return raw_text


def generate_spending_insights(receipts: Iterable[Receipt]) -> str:
    """Return concise, actionable insights for the given receipts."""
    receipts = list(receipts)
    if not receipts:
        return NO_DATA_MESSAGE

    try:
        insights = _call_insights_model(spending_data_json(receipts)).strip()
    except Exception as exc:
        logger.exception("Insights model call failed")
        raise InsightsError("Failed to generate insights. Please try again.") from exc

    if not insights:
        raise InsightsError("Failed to generate insights. Please try again.")
    return insights
