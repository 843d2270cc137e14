"""
Receipt narration: read a stored receipt aloud with a Gemini text-to-speech model.

narration_text() builds the sentence that is spoken (merchant, total, long-form
date, main items and the business tax category). generate_receipt_narration()
sends it to the TTS model and returns the audio as a WAV data URI the frontend
can play directly.
"""

from __future__ import annotations

import base64
import io
import logging
import os
import wave
from datetime import date

from dotenv import load_dotenv
from langchain_google_genai import ChatGoogleGenerativeAI, Modality

from receiptwise.graph.state import Receipt, quantize

load_dotenv(override=False)

logger = logging.getLogger(__name__)

DEFAULT_NARRATION_MODEL = "models/gemini-2.5-flash-preview-tts"

# Gemini TTS returns 24 kHz 16-bit mono PCM
PCM_RATE = 24000
PCM_SAMPLE_WIDTH = 2
PCM_CHANNELS = 1


class NarrationError(RuntimeError):
    """Raised when the text-to-speech call fails or returns no audio."""


def long_date(day: date) -> str:
    """Format a date as 'March 1st, 2024'."""
    if 11 <= day.day % 100 <= 13:
        suffix = "th"
    else:
        suffix = {1: "st", 2: "nd", 3: "rd"}.get(day.day % 10, "th")
    return f"{day.strftime('%B')} {day.day}{suffix}, {day.year}"


def narration_text(receipt: Receipt) -> str:
    """The sentence read aloud for a receipt."""
    text = (
        f"This is a receipt from {receipt.merchant} for ${quantize(receipt.amount)}, "
        f"dated {long_date(receipt.date)}."
    )

    if receipt.items:
        items_text = ", ".join(f"{item.name} for ${quantize(item.price)}" for item in receipt.items)
        text += f" The main items are: {items_text}."

    if receipt.is_business_expense:
        tax = receipt.tax_category.value if receipt.tax_category else "Business"
        text += f" This was marked as a business expense under the category {tax}."
    return text


def pcm_to_wav(pcm: bytes) -> bytes:
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wf:
        wf.setnchannels(PCM_CHANNELS)
        wf.setsampwidth(PCM_SAMPLE_WIDTH)
        wf.setframerate(PCM_RATE)
        wf.writeframes(pcm)
    return buffer.getvalue()


def _get_model() -> ChatGoogleGenerativeAI:
    model_name = os.getenv("NARRATION_MODEL", DEFAULT_NARRATION_MODEL)
    api_key = os.getenv("GOOGLE_API_KEY")
    if not api_key:
        raise RuntimeError("GOOGLE_API_KEY is not set in environment/.env")

    return ChatGoogleGenerativeAI(
        model=model_name,
        google_api_key=api_key,
        response_modalities=[Modality.AUDIO],
        max_retries=int(os.getenv("MODEL_MAX_RETRIES", "0")),
    )


def _call_tts_model(text: str) -> bytes:
    """Speak the text and return WAV bytes (empty when the model sent no audio)."""
    response = _get_model().invoke(text)
    audio = response.additional_kwargs.get("audio") or b""
    if audio and not audio.startswith(b"RIFF"):
        # raw PCM from older client versions
        audio = pcm_to_wav(audio)
    return audio


def generate_receipt_narration(receipt: Receipt) -> str:
    """Return a 'data:audio/wav;base64,...' narration of the receipt."""
    text = narration_text(receipt)
    logger.debug("Narrating receipt %s: %s", receipt.id, text)

    try:
        audio = _call_tts_model(text)
    except Exception as exc:
        logger.exception("Narration model call failed for receipt %s", receipt.id)
        raise NarrationError("Could not generate audio for this receipt.") from exc

    if not audio:
        logger.error("No media was returned from the text-to-speech model for receipt %s", receipt.id)
        raise NarrationError("Could not generate audio for this receipt.")
    return "data:audio/wav;base64," + base64.standard_b64encode(audio).decode("utf-8")
