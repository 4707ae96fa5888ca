import hashlib
import json
import logging
import re
from datetime import date, datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)

# Largest magnitude JSON.stringify still renders in plain (non-exponent) notation.
_JS_PLAIN_NUMBER_LIMIT = 1e21


def utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def js_number_form(value: Any) -> Any:
    """Integral floats become ints, so 45000.0 renders as 45000 the way JSON.stringify does."""
    if isinstance(value, float) and value.is_integer() and abs(value) < _JS_PLAIN_NUMBER_LIMIT:
        return int(value)
    if isinstance(value, dict):
        return {key: js_number_form(item) for key, item in value.items()}
    if isinstance(value, list):
        return [js_number_form(item) for item in value]
    return value


def stringify_json_bytes(value: Any) -> bytes:
    """
    Byte form matching JavaScript's JSON.stringify: keys in document order, no
    insignificant whitespace, non-ASCII written as raw UTF-8.
    """
    json_str = json.dumps(
        js_number_form(value),
        separators=(",", ":"),
        ensure_ascii=False,
        default=deterministic_serializer,
    )
    return json_str.encode("utf-8")


def md5_stringify_hash(value: Any) -> str:
    return hashlib.md5(stringify_json_bytes(value)).hexdigest()


def sha256_bytes_hash(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


def deterministic_serializer(obj: Any) -> Any:
    """
    Helper to serialize types that JSON doesn't handle natively,
    ensuring they are sorted deterministically.
    """
    if isinstance(obj, (set, frozenset)):
        return sorted(list(obj), key=str)
    if isinstance(obj, (date, datetime)):
        return obj.isoformat()
    return str(obj)


def parse_snapshot_date_from_filename(filename: str, filename_date_regex: str | None, filename_date_format: str | None) -> date | None:
    if not filename_date_regex or not filename_date_format:
        return None

    match = re.search(filename_date_regex, filename)
    if not match:
        logger.debug("Filename '%s' does not match date regex '%s'", filename, filename_date_regex)
        return None

    try:
        return datetime.strptime(match.group(1), filename_date_format).date()
    except ValueError:
        logger.warning("Filename '%s' carries an invalid date stamp '%s'", filename, match.group(1))
        return None
