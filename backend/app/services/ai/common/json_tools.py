"""Tolerant JSON extraction for LLM replies."""

from __future__ import annotations

import json
import logging
import re

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*", re.IGNORECASE)


def strip_code_fences(text: str) -> str:
    """Remove Markdown code fences (```json ... ```) anywhere in *text*."""
    return _FENCE_RE.sub("", text or "").strip()


def extract_json(text: str) -> dict | list | None:
    """Return the first JSON object or array found in *text*, or ``None``.

    Tries the whole (fence-stripped) text first, then scans for the first
    ``{`` / ``[`` whose brace-balanced span parses.
    """
    if not text or not text.strip():
        return None

    stripped = strip_code_fences(text)
    try:
        return json.loads(stripped)
    except ValueError:
        pass

    for i, ch in enumerate(stripped):
        if ch not in "{[":
            continue
        candidate = _balanced_span(stripped, i)
        if candidate is None:
            continue
        try:
            return json.loads(candidate)
        except ValueError:
            continue

    logger.debug("No JSON payload found in %d chars of model output", len(stripped))
    return None


def _balanced_span(text: str, start: int) -> str | None:
    closing = {"{": "}", "[": "]"}
    stack: list[str] = []
    in_string = False
    escape = False

    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
            continue

        if ch == '"':
            in_string = True
        elif ch in closing:
            stack.append(closing[ch])
        elif ch in "}]":
            if not stack or stack.pop() != ch:
                return None
            if not stack:
                return text[start : i + 1]
    return None
