"""Helpers for decoding structured model replies."""

from __future__ import annotations

import json
import re
from typing import Any

FENCED_BLOCK_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)

_decoder = json.JSONDecoder()


def extract_json_object(content: str) -> dict[str, Any]:
    """Return the first JSON object in a model reply.

    Fenced blocks are searched before the surrounding prose. Raises
    ``ValueError`` when no object decodes.
    """

    sources = list(FENCED_BLOCK_RE.findall(content))
    sources.append(content)
    for source in sources:
        parsed = _first_object(source)
        if parsed is not None:
            return parsed
    raise ValueError("No JSON object found in model reply")


def _first_object(text: str) -> dict[str, Any] | None:
    start = text.find("{")
    while start != -1:
        try:
            value, _ = _decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            value = None
        if isinstance(value, dict):
            return value
        start = text.find("{", start + 1)
    return None
