"""
Row Serialization Helpers

JSON columns are decoded leniently: a malformed value yields the default
and a warning, never an exception. One bad row must not abort a load.
"""
from __future__ import annotations
from typing import Any, Dict, List, Optional
import json
import logging

logger = logging.getLogger(__name__)


def to_json(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"))


def _decode(text: Optional[str], expected: type, context: str):
    if text is None or (isinstance(text, str) and not text.strip()):
        return expected()
    try:
        value = json.loads(text)
    except (TypeError, ValueError) as e:
        logger.warning("Malformed JSON in %s, using empty %s: %s", context, expected.__name__, e)
        return expected()
    if not isinstance(value, expected):
        logger.warning("Expected %s in %s, got %s; using empty value",
                       expected.__name__, context, type(value).__name__)
        return expected()
    return value


def safe_json_list(text: Optional[str], context: str = "column") -> List[Any]:
    return _decode(text, list, context)


def safe_json_dict(text: Optional[str], context: str = "column") -> Dict[str, str]:
    """Decode a parameter map; values are coerced to str."""
    raw = _decode(text, dict, context)
    return {str(k): "" if v is None else str(v) for k, v in raw.items()}


def safe_int_list(text: Optional[str], context: str = "column") -> List[int]:
    out = []
    for item in safe_json_list(text, context):
        try:
            out.append(int(item))
        except (TypeError, ValueError):
            logger.warning("Dropping non-integer id %r in %s", item, context)
    return out


def safe_str_list(text: Optional[str], context: str = "column") -> List[str]:
    return [str(item) for item in safe_json_list(text, context) if item is not None]


def split_csv(text: Optional[str]) -> List[str]:
    if not text:
        return []
    return [part.strip() for part in text.split(",") if part.strip()]
