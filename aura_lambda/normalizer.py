"""
normalizer.py — Model output → structured data
================================================
Models wrap JSON in markdown fences or surround it with prose. This layer
strips that noise and parses the object. It never raises: unparseable text
comes back as MalformedOutput so the orchestrator can hand it to the caller.
No semantic validation of field values happens here.
"""

import json
import re

from config import logger, log_ctx
from inference import MalformedOutput, Success

_FENCE_RE = re.compile(r"^```[A-Za-z0-9_+-]*[ \t]*\r?\n?(.*?)\r?\n?```$", re.DOTALL)
_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


def strip_fence(text: str) -> str:
    """Removes a single leading/trailing ``` fence, with or without language tag."""
    candidate = (text or "").strip()
    match = _FENCE_RE.match(candidate)
    if match:
        return match.group(1).strip()
    return candidate


def _load_object(text: str):
    try:
        parsed = json.loads(text)
    except (json.JSONDecodeError, TypeError, ValueError):
        return None
    return parsed if isinstance(parsed, dict) else None


def normalize_response(raw_text: str, provider_id: str | None = None):
    text = strip_fence(raw_text)

    parsed = _load_object(text)
    if parsed is None:
        match = _OBJECT_RE.search(text)
        if match:
            parsed = _load_object(match.group(0))

    if parsed is None:
        logger.warning(
            f"Failed to parse model output as JSON: {(raw_text or '')[:200]}",
            extra=log_ctx(module_name="normalizer", provider_id=provider_id or "-"),
        )
        return MalformedOutput(raw_text=raw_text or "", reason="invalid_json", provider_id=provider_id)
    return Success(structured=parsed, provider_id=provider_id)
