"""
Tests for the OCR engine. Tesseract itself is stubbed; PyMuPDF and Pillow run for real.
"""

import io

import pymupdf
import pytest
from PIL import Image

import amounts.ocr as ocr_module
from amounts.errors import ExternalCollaboratorError, UnsupportedInputError
from amounts.ocr import OCREngine


def _png_bytes():
    buf = io.BytesIO()
    Image.new("RGB", (40, 20), "white").save(buf, format="PNG")
    return buf.getvalue()


def _pdf_bytes(lines):
    doc = pymupdf.open()
    page = doc.new_page()
    if lines:
        page.insert_text((72, 72), "\n".join(lines), fontsize=11)
    data = doc.tobytes()
    doc.close()
    return data


TESSERACT_DATA = {
    "text": ["", "Total", "1200", "Paid", "1000"],
    "conf": ["-1", "90", "80", "70", "60"],
    "block_num": [1, 1, 1, 1, 1],
    "par_num": [1, 1, 1, 1, 1],
    "line_num": [0, 1, 1, 2, 2],
}


def test_image_ocr_lines_and_confidence(monkeypatch):
    calls = []

    def fake_image_to_data(img, lang, config, output_type, timeout):
        calls.append((lang, config))
        return TESSERACT_DATA

    monkeypatch.setattr(ocr_module.pytesseract, "image_to_data", fake_image_to_data)
    result = OCREngine(language="eng+hin").extract_text(_png_bytes())

    assert result.text == "Total 1200\nPaid 1000"
    assert result.confidence == pytest.approx(0.75)
    assert result.metadata["method"] == "image_ocr"
    assert calls == [("eng+hin", "--oem 3 --psm 6")]


def test_tesseract_failure_is_collaborator_error(monkeypatch):
    def broken(*args, **kwargs):
        raise RuntimeError("Tesseract process timeout")

    monkeypatch.setattr(ocr_module.pytesseract, "image_to_data", broken)
    with pytest.raises(ExternalCollaboratorError):
        OCREngine().extract_text(_png_bytes())


def test_unrecognized_bytes():
    with pytest.raises(UnsupportedInputError):
        OCREngine().extract_text(b"definitely not an image")
    with pytest.raises(UnsupportedInputError):
        OCREngine().extract_text(b"")


def test_pdf_with_native_text_skips_ocr(monkeypatch):
    def unexpected(*args, **kwargs):
        raise AssertionError("OCR should not run for text PDFs")

    monkeypatch.setattr(ocr_module.pytesseract, "image_to_data", unexpected)
    lines = [
        "CITY HOSPITAL - FINAL BILL",
        "Consultation charges: INR 800",
        "Pharmacy and consumables: INR 400",
        "Total: INR 1200 | Paid: 1000 | Due: 200",
    ]
    result = OCREngine().extract_text(_pdf_bytes(lines))

    assert result.metadata["method"] == "pdf_native"
    assert result.confidence == 1.0
    assert "Total: INR 1200" in result.text


def test_scanned_pdf_falls_back_to_ocr(monkeypatch):
    monkeypatch.setattr(ocr_module.pytesseract, "image_to_data", lambda *a, **k: TESSERACT_DATA)
    result = OCREngine(dpi=72).extract_text(_pdf_bytes([]))

    assert result.metadata["method"] == "pdf_ocr"
    assert result.text == "Total 1200\nPaid 1000"
    assert result.confidence == pytest.approx(0.75)


def test_from_config():
    engine = OCREngine.from_config({"ocr": {"language": "hin", "dpi": 300}})
    assert engine.language == "hin"
    assert engine.dpi == 300
    assert engine.config == "--oem 3 --psm 6"
