"""
Receipt narration text and the text-to-speech call (stubbed).
"""
import base64
import io
import wave
from datetime import date

import pytest

from receiptwise import narration
from receiptwise.graph.state import Receipt


@pytest.fixture()
def receipt():
    return Receipt(
        id="r1",
        merchant="Staples",
        amount="42.1",
        date=date(2024, 5, 14),
        category="Other",
        description="Printer paper and toner",
        is_business_expense=True,
        tax_category="Office Supplies",
        items=[{"name": "Printer paper", "price": "9.5"}, {"name": "Toner", "price": "32.60"}],
    )


@pytest.mark.parametrize("day,expected", [
    (date(2024, 3, 1), "March 1st, 2024"),
    (date(2024, 3, 2), "March 2nd, 2024"),
    (date(2024, 3, 3), "March 3rd, 2024"),
    (date(2024, 3, 11), "March 11th, 2024"),
    (date(2024, 3, 12), "March 12th, 2024"),
    (date(2024, 3, 22), "March 22nd, 2024"),
    (date(2024, 3, 31), "March 31st, 2024"),
])
def test_long_date(day, expected):
    assert narration.long_date(day) == expected


def test_business_receipt_text(receipt):
    assert narration.narration_text(receipt) == (
        "This is a receipt from Staples for $42.10, dated May 14th, 2024."
        " The main items are: Printer paper for $9.50, Toner for $32.60."
        " This was marked as a business expense under the category Office Supplies."
    )


def test_personal_receipt_without_items(receipt):
    personal = receipt.model_copy(update={"is_business_expense": False, "tax_category": None, "items": None})
    assert narration.narration_text(personal) == (
        "This is a receipt from Staples for $42.10, dated May 14th, 2024."
    )


def test_pcm_is_wrapped_as_wav():
    pcm = b"\x00\x01" * 240
    with wave.open(io.BytesIO(narration.pcm_to_wav(pcm))) as wf:
        assert wf.getframerate() == narration.PCM_RATE
        assert wf.getnchannels() == 1
        assert wf.getsampwidth() == 2
        assert wf.readframes(wf.getnframes()) == pcm


def test_returns_wav_data_uri(monkeypatch, receipt):
    audio = narration.pcm_to_wav(b"\x00\x00" * 10)
    monkeypatch.setattr(narration, "_call_tts_model", lambda text: audio)

    url = narration.generate_receipt_narration(receipt)
    prefix = "data:audio/wav;base64,"
    assert url.startswith(prefix)
    assert base64.b64decode(url[len(prefix):]) == audio


@pytest.mark.parametrize("behaviour", ["raise", "empty"])
def test_failures_raise_narration_error(monkeypatch, receipt, behaviour):
    def fake(_):
        if behaviour == "raise":
            raise RuntimeError("503 service unavailable")
        return b""

    monkeypatch.setattr(narration, "_call_tts_model", fake)
    with pytest.raises(narration.NarrationError, match="Could not generate audio"):
        narration.generate_receipt_narration(receipt)
