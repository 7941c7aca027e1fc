"""
Constrained decoding of short model replies.

Auxiliary calls ask the model for a bare token (YES/NO, a marker) or a bare
JSON value. A reply that does not fit the expected shape decodes to
``None`` and the caller takes its no-escalation branch. Nothing here
raises on malformed input.
"""

import json
import re
from typing import List, Optional, Type, TypeVar

import structlog
from pydantic import BaseModel, ValidationError

logger = structlog.get_logger(__name__)

M = TypeVar("M", bound=BaseModel)

_YES_NO = re.compile(r"\b(YES|NO)\b", re.IGNORECASE)
_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)
_JSON_ARRAY = re.compile(r"\[.*\]", re.DOTALL)


def parse_yes_no(reply: str) -> Optional[bool]:
    """Return True/False for the first standalone YES or NO, else None."""
    match = _YES_NO.search(reply or "")
    if not match:
        return None
    return match.group(1).upper() == "YES"


def contains_marker(reply: str, marker: str) -> bool:
    return marker.upper() in (reply or "").upper()


def parse_json_object(reply: str, schema: Type[M]) -> Optional[M]:
    """Extract the outermost JSON object from ``reply`` and validate it against ``schema``."""
    match = _JSON_OBJECT.search(reply or "")
    if not match:
        return None
    try:
        return schema.model_validate(json.loads(match.group(0)))
    except (json.JSONDecodeError, ValidationError) as e:
        logger.debug("Constrained JSON decode failed", schema=schema.__name__, error=str(e))
        return None


def parse_string_list(reply: str) -> Optional[List[str]]:
    """Extract a JSON array of strings, dropping non-string and blank entries."""
    match = _JSON_ARRAY.search(reply or "")
    if not match:
        return None
    try:
        value = json.loads(match.group(0))
    except json.JSONDecodeError:
        return None
    if not isinstance(value, list):
        return None
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]
