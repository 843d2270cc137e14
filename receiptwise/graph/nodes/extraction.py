"""
Extraction nodes: validate the embedded receipt image and read it with Gemini.

Uses Gemini via langchain-google-genai to read the receipt image and return
merchant, amount, date, category, description, line items and the
business-expense classification.

validate_input_node checks the data URI before anything is sent to the model.
extract_node calls the model, parses the JSON response and validates it
against ExtractedReceiptData. Failures are recorded in the state (error,
error_kind, audit event) and the workflow routes to the end.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Tuple

from dotenv import load_dotenv
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from langchain_google_genai import ChatGoogleGenerativeAI
from pydantic import ValidationError

from receiptwise.graph.state import (
    IMAGE_TOO_LARGE,
    INPUT_INVALID,
    MAX_LINE_ITEMS,
    MODEL_FAILURE,
    AuditEvent,
    ExtractedReceiptData,
    ExtractionState,
)
from receiptwise.prompts.extraction_prompt import EXTRACTION_USER_PROMPT, build_extraction_prompt

load_dotenv(override=False)

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "models/gemini-2.5-flash"
DEFAULT_MAX_IMAGE_BYTES = 10 * 1024 * 1024  # 10 MB

_MIME_JPEG = "image/jpeg"
ALLOWED_MIME_TYPES = {
    _MIME_JPEG,
    "image/png",
    "image/webp",
    "image/gif",
    "image/bmp",
    "image/heic",
    "image/heif",
}

_DATA_URI = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+);base64,(?P<payload>.*)$", re.DOTALL)

_IMAGE_SIGNATURES = (
    b"\xff\xd8\xff",        # JPEG
    b"\x89PNG\r\n\x1a\n",  # PNG
    b"GIF87a",
    b"GIF89a",
    b"BM",
)


class InputInvalidError(ValueError):
    """Raised when the receipt image is missing, of the wrong type or unreadable."""


class ImageTooLargeError(InputInvalidError):
    """Raised when the decoded receipt image exceeds MAX_IMAGE_BYTES."""


class ExtractionError(RuntimeError):
    """Raised when the model call fails or its output does not match the schema."""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def max_image_bytes() -> int:
    return int(os.getenv("MAX_IMAGE_BYTES", str(DEFAULT_MAX_IMAGE_BYTES)))


def image_bytes_to_data_url(raw: bytes, mime: str) -> str:
    """Encode raw image bytes as a base64 data URL."""
    b64 = base64.standard_b64encode(raw).decode("utf-8")
    return f"data:{mime};base64,{b64}"


def image_path_to_data_url(image_path: str) -> str:
    """Read an image file and return a base64-encoded data URL."""
    path = Path(image_path)
    if not path.exists():
        raise FileNotFoundError(f"Image not found: {image_path}")

    mime_map = {
        ".jpg": _MIME_JPEG,
        ".jpeg": _MIME_JPEG,
        ".png": "image/png",
        ".webp": "image/webp",
        ".gif": "image/gif",
        ".bmp": "image/bmp",
        ".heic": "image/heic",
        ".heif": "image/heif",
    }
    mime = mime_map.get(path.suffix.lower(), _MIME_JPEG)
    return image_bytes_to_data_url(path.read_bytes(), mime)


def _looks_like_image(head: bytes) -> bool:
    if any(head.startswith(sig) for sig in _IMAGE_SIGNATURES):
        return True
    # WebP: RIFF....WEBP, HEIC/HEIF: ....ftyp
    if head[:4] == b"RIFF" and head[8:12] == b"WEBP":
        return True
    return head[4:8] == b"ftyp"


def parse_data_uri(uri: str) -> Tuple[str, bytes]:
    """Validate an embedded image and return its MIME type and decoded bytes.

    Raises InputInvalidError (or ImageTooLargeError) without contacting the
    model when the image is missing, not an allowed image type, not valid
    base64, empty, oversized or not recognizably an image.
    """
    if not uri or not uri.strip():
        raise InputInvalidError("A receipt image is required.")

    match = _DATA_URI.match(uri.strip())
    if not match:
        raise InputInvalidError("The receipt image must be a base64 data URI.")

    mime = match.group("mime").lower()
    if mime not in ALLOWED_MIME_TYPES:
        raise InputInvalidError(f"Unsupported image type '{mime}'. Please upload a JPEG, PNG, or WebP image.")

    payload = re.sub(r"\s+", "", match.group("payload"))
    limit = max_image_bytes()
    # cheap bound before decoding: 4 base64 chars per 3 bytes
    if len(payload) // 4 * 3 > limit + 2:
        raise ImageTooLargeError(f"Image is too large. Maximum size is {limit // (1024 * 1024)} MB.")

    try:
        raw = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError):
        raise InputInvalidError("The receipt image is not valid base64 data.")

    if not raw:
        raise InputInvalidError("The receipt image is empty.")
    if len(raw) > limit:
        raise ImageTooLargeError(f"Image is too large. Maximum size is {limit // (1024 * 1024)} MB.")
    if not _looks_like_image(raw[:12]):
        raise InputInvalidError("File does not appear to be a valid image.")

    return mime, raw


def _extract_json(text: str) -> Dict[str, Any]:
    """Extract a JSON object from model output, tolerating markdown fences."""
    cleaned = re.sub(r"^```(?:json)?\s*", "", text.strip())
    cleaned = re.sub(r"\s*```$", "", cleaned)
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError:
        # Model wrapped the object in prose; fall back to the outermost braces
        start, end = cleaned.find("{"), cleaned.rfind("}")
        if start == -1 or end <= start:
            raise
        parsed = json.loads(cleaned[start:end + 1])
    if not isinstance(parsed, dict):
        raise ValueError("model output is not a JSON object")
    return parsed


def response_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type") == "text":
                parts.append(part.get("text", ""))
        return "".join(parts)
    return str(content)


def _trim_items(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Keep only the most expensive line items when the model returns too many."""
    items = raw.get("items")
    if not isinstance(items, list) or len(items) <= MAX_LINE_ITEMS:
        return raw

    def _price(item: Any) -> float:
        try:
            return float(item.get("price", 0))
        except (AttributeError, TypeError, ValueError):
            return 0.0

    kept = sorted(items, key=_price, reverse=True)[:MAX_LINE_ITEMS]
    logger.warning(
        "Model returned %d line items, keeping the %d most expensive",
        len(items), MAX_LINE_ITEMS,
    )
    return {**raw, "items": kept}


def parse_extraction_output(raw: Dict[str, Any]) -> ExtractedReceiptData:
    """Validate parsed model output against the extraction schema.

    Raises ExtractionError on any contract violation: missing fields, a
    category or tax category outside its enumeration, a tax category on a
    non-business expense, a malformed date, or a non-positive amount.
    """
    if not isinstance(raw, dict):
        raise ExtractionError("AI failed to extract data from the receipt image.")
    # null is how models tend to "omit" optional fields
    cleaned = {k: v for k, v in raw.items() if v is not None}
    try:
        return ExtractedReceiptData.model_validate(_trim_items(cleaned))
    except ValidationError as exc:
        logger.warning("Model output failed schema validation: %s", exc)
        raise ExtractionError(f"AI output did not match the receipt schema: {exc.error_count()} error(s)") from exc


# ---------------------------------------------------------------------------
# LLM call
# ---------------------------------------------------------------------------

def _get_model() -> ChatGoogleGenerativeAI:
    """Instantiate the Gemini model from env config."""
    model_name = os.getenv("EXTRACTION_MODEL", DEFAULT_MODEL)
    api_key = os.getenv("GOOGLE_API_KEY")
    if not api_key:
        raise RuntimeError("GOOGLE_API_KEY is not set in environment/.env")

    return ChatGoogleGenerativeAI(
        model=model_name,
        google_api_key=api_key,
        temperature=0.0,
        max_retries=int(os.getenv("MODEL_MAX_RETRIES", "0")),
    )


def build_extraction_messages(photo_data_uri: str) -> List[BaseMessage]:
    """Combine the instruction block and the embedded receipt image into one request."""
    return [
        SystemMessage(content=build_extraction_prompt()),
        HumanMessage(
            content=[
                {"type": "text", "text": EXTRACTION_USER_PROMPT},
                {"type": "image_url", "image_url": {"url": photo_data_uri}},
            ]
        ),
    ]


def _call_extraction_model(photo_data_uri: str) -> Dict[str, Any]:
    """Send the image to Gemini and return the parsed JSON response."""
    model = _get_model()
    response = model.invoke(build_extraction_messages(photo_data_uri))
    raw_text = response_text(response.content)

    logger.debug("Extraction model raw response:\n%s", raw_text)
    return _extract_json(raw_text)


# ---------------------------------------------------------------------------
# Graph nodes
# ---------------------------------------------------------------------------

def validate_input_node(state: ExtractionState) -> Dict[str, Any]:
    """LangGraph node: reject a missing, mistyped or oversized image early."""
    try:
        mime, raw = parse_data_uri(state.photo_data_uri)
    except InputInvalidError as exc:
        logger.info("Rejected receipt image: %s", exc)
        return {
            "current_node": "validate_input",
            "error": str(exc),
            "error_kind": IMAGE_TOO_LARGE if isinstance(exc, ImageTooLargeError) else INPUT_INVALID,
            "audit_log": [
                AuditEvent(
                    node="validate_input",
                    message=f"REJECTED: {exc}",
                )
            ],
        }

    return {
        "current_node": "validate_input",
        "mime_type": mime,
        "audit_log": [
            AuditEvent(
                node="validate_input",
                message="accepted receipt image",
                details={"mime_type": mime, "bytes": len(raw)},
            )
        ],
    }


def extract_node(state: ExtractionState) -> Dict[str, Any]:
    """LangGraph node: extract structured receipt data from the image.

    A single blocking call with no retries. A failed call, unparseable text
    or a schema violation all end the workflow with a model-failure error.
    """
    raw = None
    try:
        raw = _call_extraction_model(state.photo_data_uri)
        extracted = parse_extraction_output(raw)
    except Exception as exc:
        logger.exception("Receipt extraction failed")
        return {
            "current_node": "extract",
            "raw_output": raw,
            "error": "AI processing failed. The image might be unreadable or a server error occurred. Please try again.",
            "error_kind": MODEL_FAILURE,
            "audit_log": [
                AuditEvent(
                    node="extract",
                    message=f"ERROR: extraction failed: {exc}",
                )
            ],
        }

    return {
        "current_node": "extract",
        "raw_output": raw,
        "extracted": extracted,
        "audit_log": [
            AuditEvent(
                node="extract",
                message=f"Extracted receipt from {extracted.merchant}",
                details={
                    "category": extracted.category.value,
                    "item_count": len(extracted.items or []),
                    "is_business_expense": extracted.is_business_expense,
                },
            )
        ],
    }
