"""
Prompt template for the receipt extraction node.

This prompt instructs Gemini to read a photographed receipt and return its
merchant, total, date, spending category, description, line items and
business-expense classification as a single JSON object.
"""

from __future__ import annotations

from receiptwise.graph.state import MAX_LINE_ITEMS, Category, TaxCategory

EXTRACTION_SYSTEM_PROMPT = """\
You are an expert accounting assistant specializing in extracting data from
receipts. Analyze the provided receipt image and extract the purchase details.

Return ONLY a valid JSON object (no markdown fences, no commentary) with this
exact schema:

{{
  "merchant": "<the merchant's name>",
  "amount": <the total transaction amount as a number>,
  "date": "<the transaction date as YYYY-MM-DD>",
  "category": "<one of: {categories}>",
  "description": "<a brief, one-sentence summary of the purchase>",
  "is_business_expense": <true or false>,
  "tax_category": "<one of: {tax_categories}>",
  "items": [
    {{"name": "<item name as printed>", "price": <item price as a number>}}
  ]
}}

Rules:
1. category MUST be exactly one of: {categories}.
2. description MUST NOT be the same as the category name. For example, if the
   category is 'Groceries', a good description is 'Weekly grocery shopping at
   a supermarket'.
3. date MUST be formatted as YYYY-MM-DD.
4. items lists at most {max_items} of the most significant or expensive line
   items. If there are no clear line items, omit the items field.
5. Based on the merchant and items, decide whether this is likely a business
   expense and set is_business_expense to true or false.
6. If it is a business expense you MUST set tax_category to exactly one of:
   {tax_categories}. If it is not a business expense you MUST omit the
   tax_category field.
7. Do NOT include any text outside the JSON object.
"""

EXTRACTION_USER_PROMPT = """\
Here is the receipt image to analyze.
"""


def build_extraction_prompt() -> str:
    """Render the instruction block with the current category taxonomies."""
    return EXTRACTION_SYSTEM_PROMPT.format(
        categories=", ".join(c.value for c in Category),
        tax_categories=", ".join(t.value for t in TaxCategory),
        max_items=MAX_LINE_ITEMS,
    )
