# core/text_normalizer.py
import re

# Known OCR confusions seen on scanned exam papers.
_OCR_FIXES = (
    (re.compile(r"©"), "c)"),
    (re.compile(r"\bDesoribe\b"), "Describe"),
    (re.compile(r"\bitswarious\b"), "its various"),
)

# Control characters except \n and \t, plus zero-width and BOM artifacts.
_ARTIFACTS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f\u200b-\u200d\ufeff\ufffd]")
_SPACES = re.compile(r"[ \t\u00a0]+")
_BLANK_RUNS = re.compile(r"\n{3,}")


def normalize_text(raw: str) -> str:
    """
    Clean extracted text while keeping its line structure.

    - \\r\\n and \\r become \\n
    - OCR confusions replaced, artifacts dropped
    - runs of spaces/tabs collapsed within each line, lines trimmed
    - more than one blank line collapsed to one
    """
    if not raw:
        return ""
    text = raw.replace("\r\n", "\n").replace("\r", "\n")
    for pattern, repl in _OCR_FIXES:
        text = pattern.sub(repl, text)
    text = _ARTIFACTS.sub("", text)
    lines = [_SPACES.sub(" ", line).strip() for line in text.split("\n")]
    text = "\n".join(lines)
    text = _BLANK_RUNS.sub("\n\n", text)
    return text.strip()
