"""
OCR Engine
==========
Recovers text from uploaded document bytes so the token extractor can scan it.

Detection order:
1. PDF with native text -> PyMuPDF extraction
2. PDF without text (scanned) -> pages rasterised and OCR'd via pytesseract
3. Images (jpg, png, tiff, webp, ...) -> OCR via pytesseract
"""

import io
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import pymupdf  # PyMuPDF 1.26+ uses pymupdf, not fitz
import pytesseract
from PIL import Image, UnidentifiedImageError

from .errors import ExternalCollaboratorError, UnsupportedInputError

logger = logging.getLogger(__name__)


@dataclass
class OCRResult:
    """Text recovered from a document plus the engine's confidence in it."""
    text: str
    confidence: float
    metadata: Dict[str, Any] = field(default_factory=dict)


class OCREngine:
    """
    Extracts text from image or PDF bytes.

    Confidence is the mean of tesseract's positive word confidences scaled to
    [0, 1]; native PDF text is reported at 1.0.
    """

    PDF_MAGIC = b"%PDF"
    MIN_TEXT_LENGTH_FOR_NATIVE = 100
    OCR_CONFIG = '--oem 3 --psm 6'

    def __init__(self, language: str = "eng", dpi: int = 200, config: Optional[str] = None, timeout_s: float = 0):
        """
        Initialize the OCR engine.

        Args:
            language: Tesseract language pack(s), e.g. "eng" or "eng+hin"
            dpi: DPI for PDF to image conversion (for scanned PDFs)
            config: Tesseract CLI flags
            timeout_s: Per-page tesseract timeout in seconds (0 disables)
        """
        self.language = language
        self.dpi = dpi
        self.config = config or self.OCR_CONFIG
        self.timeout_s = timeout_s

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "OCREngine":
        ocr_cfg = cfg.get("ocr", {}) or {}
        return cls(
            language=str(ocr_cfg.get("language", "eng")),
            dpi=int(ocr_cfg.get("dpi", 200)),
            config=ocr_cfg.get("config"),
            timeout_s=float(ocr_cfg.get("timeout_s", 0) or 0),
        )

    def extract_text(self, data: bytes) -> OCRResult:
        """
        Extract text from document bytes.

        Raises:
            UnsupportedInputError: bytes are neither a PDF nor a decodable image
            ExternalCollaboratorError: tesseract or PyMuPDF failed
        """
        if not data:
            raise UnsupportedInputError("Empty document")
        if data[:4] == self.PDF_MAGIC:
            return self._extract_pdf(data)
        return self._extract_image(data)

    def _extract_pdf(self, data: bytes) -> OCRResult:
        try:
            doc = pymupdf.open(stream=data, filetype="pdf")
        except Exception as e:
            raise ExternalCollaboratorError(f"Could not open PDF: {e}") from e

        try:
            page_count = len(doc)
            native_text = "\n".join(page.get_text("text") or "" for page in doc)
            native_char_count = len(native_text.strip())

            if native_char_count >= self.MIN_TEXT_LENGTH_FOR_NATIVE:
                logger.info(f"PDF native text: {native_char_count} chars")
                return OCRResult(
                    text=native_text,
                    confidence=1.0,
                    metadata={"method": "pdf_native", "pages": page_count, "char_count": native_char_count},
                )

            logger.info(f"PDF has insufficient native text ({native_char_count} chars), falling back to OCR")
            mat = pymupdf.Matrix(self.dpi / 72, self.dpi / 72)
            parts: List[str] = []
            confidences: List[float] = []
            for page_num, page in enumerate(doc):
                pix = page.get_pixmap(matrix=mat)
                img = Image.frombytes("RGB", [pix.width, pix.height], pix.samples)
                text, conf = self._recognize(img)
                parts.append(text)
                if conf is not None:
                    confidences.append(conf)
        finally:
            doc.close()

        text = "\n\n".join(parts)
        return OCRResult(
            text=text,
            confidence=_mean(confidences),
            metadata={"method": "pdf_ocr", "pages": page_count, "char_count": len(text)},
        )

    def _extract_image(self, data: bytes) -> OCRResult:
        try:
            img = Image.open(io.BytesIO(data))
            img.load()
        except (UnidentifiedImageError, OSError) as e:
            raise UnsupportedInputError(f"Unrecognized binary input: {e}") from e

        if img.mode not in ("RGB", "L"):
            img = img.convert("RGB")
        text, conf = self._recognize(img)
        return OCRResult(
            text=text,
            confidence=_mean([conf] if conf is not None else []),
            metadata={"method": "image_ocr", "pages": 1, "image_size": f"{img.width}x{img.height}", "char_count": len(text)},
        )

    def _recognize(self, img: Image.Image) -> Tuple[str, Optional[float]]:
        """Run tesseract once and return (text, mean word confidence in [0,1])."""
        try:
            data = pytesseract.image_to_data(
                img,
                lang=self.language,
                config=self.config,
                output_type=pytesseract.Output.DICT,
                timeout=self.timeout_s,
            )
        except (pytesseract.TesseractError, pytesseract.TesseractNotFoundError, RuntimeError) as e:
            raise ExternalCollaboratorError(f"Tesseract failed: {e}") from e

        lines: Dict[Tuple[int, int, int], List[str]] = {}
        confs: List[float] = []
        for i, word in enumerate(data.get("text", [])):
            word = (word or "").strip()
            if not word:
                continue
            key = (data["block_num"][i], data["par_num"][i], data["line_num"][i])
            lines.setdefault(key, []).append(word)
            try:
                conf = float(data["conf"][i])
            except (TypeError, ValueError):
                continue
            if conf >= 0:
                confs.append(conf)

        text = "\n".join(" ".join(words) for _, words in sorted(lines.items()))
        mean_conf = (sum(confs) / len(confs) / 100) if confs else None
        return text, mean_conf


def _mean(values: List[float]) -> float:
    if not values:
        return 0.0
    return round(sum(values) / len(values), 2)
