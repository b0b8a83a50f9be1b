# FILE: coverpages/providers/tesseract.py
"""
Tesseract OCR provider
"""
import io
import logging
from typing import Any, Dict, List

import pytesseract
from PIL import Image

from coverpages.providers.base import OCREngine

logger = logging.getLogger(__name__)


def combine_confidences(confidences: List[float], mode: str = "mean") -> float:
    """Collapse word confidences (0-100) into one page confidence (0-1)"""
    if not confidences:
        return 0.0
    if mode == "min":
        value = min(confidences)
    else:
        value = sum(confidences) / len(confidences)
    return round(value / 100.0, 4)


class TesseractProvider(OCREngine):
    """pytesseract wrapper"""

    def __init__(self, lang: str = "eng", psm_mode: int = 3, confidence_mode: str = "mean"):
        self.lang = lang
        self.psm_mode = psm_mode
        self.confidence_mode = confidence_mode

    def run_ocr(self, image_bytes: bytes) -> Dict[str, Any]:
        pil_image = Image.open(io.BytesIO(image_bytes))
        config = f"--psm {self.psm_mode}"

        data = pytesseract.image_to_data(
            pil_image,
            lang=self.lang,
            config=config,
            output_type=pytesseract.Output.DICT,
        )
        # conf is -1 for non-word boxes
        confidences = [
            float(conf)
            for word, conf in zip(data.get("text", []), data.get("conf", []))
            if str(word).strip() and float(conf) >= 0
        ]

        text = pytesseract.image_to_string(pil_image, lang=self.lang, config=config)

        return {
            "text": text.strip(),
            "confidence": combine_confidences(confidences, self.confidence_mode),
        }
