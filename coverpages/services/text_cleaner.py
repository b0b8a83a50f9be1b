# FILE: coverpages/services/text_cleaner.py
"""
OCR text cleanup before sending pages to the cleanup model

Removes noise that preview screenshots reliably produce:
- Bracketed running headers ([3 The Title ...])
- Viewer chrome (Sign in, Copyrighted material, page controls)
- Hyphenation across line breaks
- Lines that are mostly symbols
- Excess whitespace and newlines
"""
import logging
import re

logger = logging.getLogger(__name__)


def clean_ocr_text(text: str, max_chars: int = 0) -> str:
    """
    Clean OCR text from one page half.

    Args:
        text: Raw OCR output
        max_chars: Truncate to this many characters (0 = no limit)

    Returns:
        Single-line cleaned text
    """
    if not text:
        return ""

    original_length = len(text)

    # Step 1: Remove bracketed headers
    text = remove_bracketed_text(text)

    # Step 2: Remove preview viewer chrome
    text = remove_viewer_chrome(text)

    # Step 3: Join words hyphenated across lines
    text = join_hyphenated_words(text)

    # Step 4: Drop symbol-only lines
    text = remove_noise_lines(text)

    # Step 5: Collapse to a single line
    text = collapse_whitespace(text)

    if max_chars and len(text) > max_chars:
        text = text[:max_chars]

    logger.debug(f"[OCR CLEAN] {original_length} -> {len(text)} chars")
    return text


def remove_bracketed_text(text: str) -> str:
    """Remove bracketed fragments such as running headers"""
    return re.sub(r'\[.*?\]', '', text, flags=re.DOTALL)


def remove_viewer_chrome(text: str) -> str:
    """Remove text rendered by the preview viewer rather than the book"""

    patterns = [
        r'\bSign\s*in\b',
        r'Copyrighted\s+material',
        r'Page\s+\d+\s+of\s+\d+',
        r'Books\s+on\s+Google\s+Play',
        r'This\s+page\s+is\s+not\s+shown\s+in\s+this\s+preview\.?',
    ]

    for pattern in patterns:
        text = re.sub(pattern, '', text, flags=re.IGNORECASE)

    return text


def join_hyphenated_words(text: str) -> str:
    """exam-\\nple -> example"""
    return re.sub(r'(\w+)-\s*\n\s*(\w+)', r'\1\2', text)


def remove_noise_lines(text: str, min_alpha_ratio: float = 0.5) -> str:
    """Drop lines where letters are a minority of the visible characters"""
    kept = []
    for line in text.split('\n'):
        visible = [c for c in line if not c.isspace()]
        if not visible:
            kept.append(line)
            continue
        alpha = sum(1 for c in visible if c.isalpha())
        if alpha / len(visible) >= min_alpha_ratio:
            kept.append(line)
    return '\n'.join(kept)


def collapse_whitespace(text: str) -> str:
    """Newlines become spaces; runs of spaces become one"""
    text = re.sub(r'\n+', ' ', text)
    text = re.sub(r'\s{2,}', ' ', text)
    return text.strip()
