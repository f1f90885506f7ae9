from __future__ import annotations

import re
from datetime import datetime, timezone


def slugify(raw: str) -> str:
    """Lowercase ``raw`` and collapse every run of non-alphanumerics into one dash."""
    value = re.sub(r"[^a-z0-9]+", "-", str(raw).strip().lower())
    return value.strip("-")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def truncate(value: str, max_length: int = 400) -> str:
    text = value.strip()
    if max_length <= 0 or len(text) <= max_length:
        return text
    if max_length <= 3:
        return text[:max_length]
    return f"{text[: max_length - 3]}..."
