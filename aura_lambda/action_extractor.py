import json
import re

from config import log_ctx, logger

_ACTION_RE = re.compile(r"<action>(.+?)</action>", re.DOTALL)


def extract_actions(full_text: str):
    """
    Pulls the first <action>...</action> directive out of a coach reply.

    Returns (clean_text, actions). The tagged region is removed from the
    text even when its JSON does not parse; actions is then empty.
    """
    text = full_text or ""
    match = _ACTION_RE.search(text)
    if not match:
        return text.strip(), []

    actions = []
    try:
        parsed = json.loads(match.group(1).strip())
    except ValueError as exc:
        logger.warning(
            f"Failed to parse action directive: {exc}",
            extra=log_ctx(module_name="action_extractor"),
        )
        parsed = None

    if isinstance(parsed, dict):
        actions = [parsed]
    elif isinstance(parsed, list):
        actions = [a for a in parsed if isinstance(a, dict)]

    clean = (text[:match.start()] + text[match.end():]).strip()
    return clean, actions
