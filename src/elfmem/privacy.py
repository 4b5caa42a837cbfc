"""ELF privacy filter -- keep content wrapped in <private> tags out of memory."""

import json
import logging
import re
from typing import Any

logger = logging.getLogger("elfmem.privacy")

PRIVATE_MARKER_RE = re.compile(r"<\s*/?\s*private\s*>", re.IGNORECASE)


def _as_text(payload: Any) -> str:
    if payload is None:
        return ""
    if isinstance(payload, str):
        return payload
    if isinstance(payload, bytes):
        return payload.decode("utf-8", errors="replace")
    try:
        return json.dumps(payload, default=str)
    except (TypeError, ValueError):
        return str(payload)


def contains_private(text: Any) -> bool:
    return bool(PRIVATE_MARKER_RE.search(_as_text(text)))


def is_private(content: str, payload: Any = None) -> bool:
    """True if the content or the raw outcome payload carries a private marker.

    Callers must check this before embedding or persisting anything.
    """
    if contains_private(content) or contains_private(payload):
        logger.info("Skipped a write marked <private>")
        return True
    return False
