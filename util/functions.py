# util/functions.py
import random
import string
import time
from datetime import datetime, timezone

_ID_ALPHABET = string.digits + string.ascii_lowercase


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_job_id() -> str:
    """
    - Format: job_<epoch-ms>_<9 base36 chars>.
    - Sortable by creation time when compared as (ms, suffix).
    """
    suffix = "".join(random.choices(_ID_ALPHABET, k=9))
    return f"job_{int(time.time() * 1000)}_{suffix}"


def clip_chars(text: str, max_chars: int) -> str:
    """Trim `text` to at most `max_chars` characters (no ellipsis; stored previews stay exact)."""
    if max_chars <= 0:
        return ""
    return text if len(text) <= max_chars else text[:max_chars]

