"""
End-to-end tests for the amount detection pipeline.

Collaborators are replaced with small fakes; no tesseract binary or network
access is needed.
"""

import warnings

import pytest

import amounts.pipeline as pipeline_module
from amounts.classifier import ClassifiedAmount
from amounts.context import PipelineContext
from amounts.errors import ExternalCollaboratorError
from amounts.ocr import OCRResult
from amounts.pipeline import AmountPipeline, blend_confidence, format_output


class FakeOCR:
    def __init__(self, text="", confidence=0.9, error=None):
        self.text = text
        self.confidence = confidence
        self.error = error

    def extract_text(self, data):
        if self.error:
            raise self.error
        return OCRResult(text=self.text, confidence=self.confidence)


class FakeLLM:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.calls = 0

    def process_document(self, text):
        self.calls += 1
        if self.error:
            raise self.error
        return self.result


def make_pipeline(config=None, ocr=None, llm=None):
    context = PipelineContext(
        config or {},
        ocr_factory=lambda cfg: ocr or FakeOCR(),
        llm_factory=lambda cfg: llm,
    )
    return AmountPipeline(context)


def test_text_receipt_end_to_end():
    result = make_pipeline().process("Total: INR 1200 | Paid: 1000 | Due: 200")

    assert result.to_dict() == {
        "currency": "INR",
        "amounts": [
            {"type": "total_bill", "value": 1200, "source": "text: 'Total: INR 1200'"},
            {"type": "paid", "value": 1000, "source": "text: 'Paid: 1000'"},
            {"type": "due", "value": 200, "source": "text: 'Due: 200'"},
        ],
        "status": "ok",
    }
    assert result.confidence >= 0.6


def test_empty_input_is_too_noisy():
    out = make_pipeline().process("").to_dict()
    assert out["status"] == "no_amounts_found"
    assert out["reason"] == "document too noisy"
    assert out["amounts"] == []
    assert "_warnings" not in out


def test_text_without_amounts_is_too_noisy():
    out = make_pipeline().process("This is just some random text without any clear monetary amounts.").to_dict()
    assert out["status"] == "no_amounts_found"
    assert out["reason"] == "document too noisy"


def test_only_percentages_trip_normalization_guardrail():
    out = make_pipeline().process("Discount 10% and tax 5%").to_dict()
    assert out["status"] == "no_amounts_found"
    assert out["reason"] == "no valid amounts found after normalization"


def test_ocr_corrupted_amounts_are_located_as_written():
    result = make_pipeline().process("Total: Rs l200 | Paid: 1000 | Due: 2O0")

    assert result.status == "ok"
    assert result.currency == "INR"
    assert [(a.type, a.value) for a in result.amounts] == [
        ("total_bill", 1200), ("paid", 1000), ("due", 200),
    ]
    assert result.amounts[0].provenance == "text: 'Total: Rs l200'"


def test_output_sorted_by_type_priority_then_value():
    text = "Discount 50 | Due: 300 | Total: 1350 | GST 18 | Misc 7 | Misc 9"
    result = make_pipeline().process(text)

    assert [(a.type, a.value) for a in result.amounts] == [
        ("total_bill", 1350), ("due", 300), ("tax", 18), ("discount", 50), ("other", 9), ("other", 7),
    ]


def test_file_text_is_classified_with_context():
    result = make_pipeline().process("Amount Paid 900\nBalance Due 100", from_file=True)
    assert [(a.type, a.value) for a in result.amounts] == [("paid", 900), ("due", 100)]


def test_from_file_does_not_change_the_result():
    text = "Grand Total 2,500\nAdvance 1,000\nBalance 1,500"
    typed = make_pipeline().process(text)
    uploaded = make_pipeline().process(text, from_file=True)
    assert uploaded.to_dict() == typed.to_dict()
    assert uploaded.confidence == typed.confidence


def test_provenance_quotes_tokens_as_written():
    result = make_pipeline().process("Invoice 11,200 | Total: 1,200 | Paid: 1,000")
    by_value = {a.value: a for a in result.amounts}

    assert by_value[1200].type == "total_bill"
    assert by_value[1200].provenance == "text: 'Total: 1,200'"
    assert by_value[1000].provenance == "text: 'Paid: 1,000'"
    assert by_value[11200].type == "other"
    assert by_value[11200].provenance == "text: 'Invoice 11,200'"


def test_provenance_keeps_long_digit_runs_verbatim():
    result = make_pipeline().process("Total: 12345678901234567 | Paid: 5")

    total = result.amounts[0]
    assert total.type == "total_bill"
    assert total.provenance == "text: 'Total: 12345678901234567'"


def test_labelled_ocr_text_is_classified_by_keyword():
    ocr = FakeOCR("Paid: 1000\nTotal: 1200\nDue: 200", confidence=0.9)
    result = make_pipeline(ocr=ocr).process(b"\x89PNG fake image")

    assert [(a.type, a.value, a.provenance) for a in result.amounts] == [
        ("total_bill", 1200, "text: 'Total: 1200'"),
        ("paid", 1000, "text: 'Paid: 1000'"),
        ("due", 200, "text: 'Due: 200'"),
    ]


def test_pdf_ocr_text_is_classified_by_keyword():
    ocr = FakeOCR("Due 200\nTotal 1200\nPaid 1000", confidence=0.95)
    result = make_pipeline(ocr=ocr).process(b"%PDF-1.7 fake")

    assert [(a.type, a.value) for a in result.amounts] == [
        ("total_bill", 1200), ("paid", 1000), ("due", 200),
    ]


@pytest.mark.parametrize("text", ["", "   \n\t "])
def test_positional_roles_only_without_text(text):
    result = make_pipeline().classify(text, [1200, 1000, 200])

    assert [(a.type, a.value) for a in result.amounts] == [
        ("total_bill", 1200), ("paid", 1000), ("due", 200),
    ]
    assert all(a.provenance == "No text context available for classification" for a in result.amounts)
    assert result.confidence == pytest.approx(0.7)


def test_unlabelled_ocr_text_is_still_read_for_context():
    ocr = FakeOCR("CITY HOSPITAL\n1200\n1000\n200", confidence=0.9)
    result = make_pipeline(ocr=ocr).process(b"\x89PNG fake image")

    assert {a.type for a in result.amounts} == {"other"}
    assert all(a.provenance.startswith("text: ") for a in result.amounts)


def test_ocr_failure_is_an_error_result():
    ocr = FakeOCR(error=ExternalCollaboratorError("tesseract missing"))
    out = make_pipeline(ocr=ocr).process(b"\x89PNG fake image").to_dict()

    assert out == {"currency": "INR", "amounts": [], "status": "error", "error": "tesseract missing"}


def test_unsupported_input():
    out = make_pipeline().process(12345).to_dict()
    assert out["status"] == "error"
    assert out["amounts"] == []
    assert out["currency"] == "INR"


def test_stage_failure_recovers_with_regex_fallback(monkeypatch):
    def broken(*args, **kwargs):
        raise RuntimeError("classifier exploded")

    monkeypatch.setattr(pipeline_module, "classify_amounts", broken)
    result = make_pipeline().process("Total: 1,500 | Paid: 1,000")

    assert result.status == "ok"
    assert [(a.type, a.value) for a in result.amounts] == [("total_bill", 1500), ("paid", 1000)]


def test_fallback_failure_is_terminal(monkeypatch):
    def broken(*args, **kwargs):
        raise RuntimeError("classifier exploded")

    monkeypatch.setattr(pipeline_module, "classify_amounts", broken)
    out = make_pipeline().process("Qty 3 x 4 USD").to_dict()

    assert out == {"currency": "USD", "amounts": [], "status": "error", "error": "classifier exploded"}


def test_llm_assisted_path_runs_first():
    llm = FakeLLM({
        "currency": "USD",
        "amounts": [{"type": "total_bill", "value": 120.0, "source": "Total $120"}],
        "status": "ok",
    })
    result = make_pipeline({"pipeline": {"use_llm": True}}, llm=llm).process("Total $120 | Paid $100")

    assert llm.calls == 1
    assert result.to_dict() == {
        "currency": "USD",
        "amounts": [{"type": "total_bill", "value": 120, "source": "text: 'Total $120'"}],
        "status": "ok",
    }


def test_llm_failure_falls_through_to_heuristics():
    llm = FakeLLM(error=ExternalCollaboratorError("All LLM model attempts failed"))
    result = make_pipeline({"pipeline": {"use_llm": True}}, llm=llm).process("Total $120 | Paid $100")

    assert llm.calls == 1
    assert result.currency == "USD"
    assert [(a.type, a.value) for a in result.amounts] == [("total_bill", 120), ("paid", 100)]


def test_llm_not_consulted_by_default():
    llm = FakeLLM(error=AssertionError("should not be called"))
    make_pipeline(llm=llm).process("Total $120 | Paid $100")
    assert llm.calls == 0


def test_confidence_exactly_at_threshold_is_kept():
    items = [
        ClassifiedAmount("total_bill", 100, 0.5, "text: 'Total 100'"),
        ClassifiedAmount("paid", 60, 0.49, "text: 'Paid 60'"),
    ]
    result = format_output("INR", items, {"normalization": 1.0, "classification": 0.9})

    assert [a.value for a in result.amounts] == [100]
    assert result.status == "warning"
    assert result.to_dict()["_warnings"] == ["filtered 1 low-confidence amount(s)"]


def test_low_overall_confidence_is_a_warning():
    items = [ClassifiedAmount("due", 40, 0.8, "text: 'Due 40'")]
    result = format_output("INR", items, {"ocr": 0.2, "normalization": 0.5, "classification": 0.8})

    assert result.status == "warning"
    assert result.warnings == ["low overall confidence: 0.47"]


def test_nothing_above_threshold_is_an_error():
    items = [ClassifiedAmount("other", 5, 0.3, "x")]
    result = format_output("INR", items, {"normalization": 1.0, "classification": 0.3})

    out = result.to_dict()
    assert out["status"] == "error"
    assert out["amounts"] == []
    assert out["error"] == "no amounts above confidence threshold"
    assert out["_warnings"] == ["filtered 1 low-confidence amount(s)"]


def test_blend_renormalizes_over_stages_that_ran():
    assert blend_confidence({"ocr": 0.5, "normalization": 1.0, "classification": 1.0}) == pytest.approx(0.8)
    assert blend_confidence({"normalization": 1.0, "classification": 0.5}) == pytest.approx(0.75)
    assert blend_confidence({}) == 0.0


def test_warning_status_survives_warnings_as_errors():
    pipeline = make_pipeline({"pipeline": {"min_amount_confidence": 0.99}})
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        result = pipeline.process("Total: 1200 | Paid: 1000")

    assert result.status == "warning"
    assert [(a.type, a.value) for a in result.amounts] == [("total_bill", 1200)]
    assert result.warnings == ["filtered 1 low-confidence amount(s)"]
