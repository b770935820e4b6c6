"""Defensive parsing of provider output.

Providers are asked for JSON but routinely wrap it in markdown fences, prefix
it with chatter or cut it off half way. Nothing here raises: every failure is
logged and the caller's fallback comes back instead, so a bad reply degrades
one field of one beat rather than the whole session.

    parse_json(text, fallback)   → decoded object or fallback
    normalize(text, fallback)    → pydantic record built over fallback's values
"""

from __future__ import annotations

import json
import logging
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

_FENCES = ("```json", "```JSON", "```")

M = TypeVar("M", bound=BaseModel)


def strip_fences(text: str) -> str:
    clean = text.strip()
    for fence in _FENCES:
        clean = clean.replace(fence, "")
    return clean


def _slice_object(text: str) -> str:
    """Cut ``text`` down to the span from the first '{' to the last '}'."""
    first = text.find("{")
    last = text.rfind("}")
    if first != -1 and last > first:
        return text[first:last + 1]
    return text


def parse_json(text: Any, fallback: Any) -> Any:
    """Decode a JSON object out of untrusted provider text.

    Returns ``fallback`` unchanged for empty input, undecodable input, or a
    decoded value whose type differs from a dict/list fallback.
    """
    if not text or not isinstance(text, str):
        return fallback
    try:
        data = json.loads(_slice_object(strip_fences(text)))
    except (ValueError, RecursionError) as e:
        logger.warning("JSON parse failed (%s); using fallback. text=%.200r", e, text)
        return fallback
    if isinstance(fallback, (dict, list)) and not isinstance(data, type(fallback)):
        logger.warning(
            "JSON parse produced %s, expected %s; using fallback",
            type(data).__name__, type(fallback).__name__,
        )
        return fallback
    return data


def _blank(value: Any) -> bool:
    return value is None or value == "" or value == []


def coerce(data: Any, fallback: M) -> M:
    """Overlay the usable keys of ``data`` on ``fallback`` and validate.

    Keys are matched by alias (camelCase) or field name. Blank values keep the
    fallback's value. Fields that fail validation are reset to the fallback's
    value one by one; the rest of the record survives.
    """
    if not isinstance(data, dict):
        return fallback
    model = type(fallback)
    base = fallback.model_dump(by_alias=True)
    keys: dict[str, str] = {}
    for name, info in model.model_fields.items():
        alias = info.alias or name
        keys[name] = alias
        keys[alias] = alias

    candidate = dict(base)
    for key, value in data.items():
        target = keys.get(key)
        if target is not None and not _blank(value):
            candidate[target] = value

    try:
        return model.model_validate(candidate)
    except ValidationError as e:
        bad = {err["loc"][0] for err in e.errors() if err["loc"]}
        logger.warning("Discarding invalid fields %s from %s", sorted(map(str, bad)), model.__name__)
        for key in bad:
            if key in base:
                candidate[key] = base[key]
    try:
        return model.model_validate(candidate)
    except ValidationError:
        return fallback


def normalize(text: Any, fallback: M) -> M:
    """Parse provider text into a record of the fallback's type; never raises."""
    return coerce(parse_json(text, {}), fallback)
