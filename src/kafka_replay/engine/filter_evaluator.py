"""
Filter evaluation for replay records.

``matches`` is a pure function of the record and the filter. Malformed
input (undecodable JSON, unresolvable paths) counts as a non-match and
never raises.
"""

import json
import re
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Callable, List, Optional, Pattern

from kafka_replay.schemas.filters import (
    FilterLogic,
    HeaderFilter,
    KeyContainsFilter,
    KeyExactFilter,
    KeyPrefixFilter,
    KeyRegexFilter,
    MessageFilter,
    TimestampRangeFilter,
    ValueContainsFilter,
    ValueJsonPathFilter,
    ValueRegexFilter,
    ValueSizeFilter,
    parse_json_path,
)
from kafka_replay.schemas.records import ReplayRecord

_MISSING = object()


@lru_cache(maxsize=256)
def _compiled(pattern: str) -> Pattern[str]:
    return re.compile(pattern)


@lru_cache(maxsize=256)
def _path_steps(path: str) -> tuple:
    return tuple(parse_json_path(path))


def _decode(data: bytes) -> str:
    return data.decode("utf-8", errors="replace")


def _matches_key(record: ReplayRecord, key_filter: Any) -> bool:
    if record.key is None:
        return False
    key = _decode(record.key)

    if isinstance(key_filter, KeyExactFilter):
        return key == key_filter.value
    if isinstance(key_filter, KeyPrefixFilter):
        return key.startswith(key_filter.prefix)
    if isinstance(key_filter, KeyRegexFilter):
        return _compiled(key_filter.pattern).fullmatch(key) is not None
    if isinstance(key_filter, KeyContainsFilter):
        return key_filter.value in key
    raise TypeError(f"Unsupported key filter: {type(key_filter).__name__}")


def resolve_json_path(document: Any, path: str) -> Any:
    """Walk a parsed JSON document. Returns None when any step is missing."""
    node = document
    for step in _path_steps(path):
        if isinstance(step, int):
            if not isinstance(node, list) or step >= len(node):
                return None
            node = node[step]
        else:
            if not isinstance(node, dict):
                return None
            node = node.get(step, _MISSING)
            if node is _MISSING:
                return None
    return node


def _matches_json_path(value: bytes, json_filter: ValueJsonPathFilter) -> bool:
    try:
        document = json.loads(value)
    except (UnicodeDecodeError, json.JSONDecodeError, RecursionError):
        # RecursionError: nesting deeper than the decoder can handle
        return False

    found = resolve_json_path(document, json_filter.path)
    if found is None:
        return False
    if json_filter.equals is not None:
        return found == json_filter.equals
    return True


def _matches_value(record: ReplayRecord, value_filter: Any) -> bool:
    if record.value is None:
        return False

    if isinstance(value_filter, ValueSizeFilter):
        size = len(record.value)
        if value_filter.min_bytes is not None and size < value_filter.min_bytes:
            return False
        if value_filter.max_bytes is not None and size > value_filter.max_bytes:
            return False
        return True
    if isinstance(value_filter, ValueJsonPathFilter):
        return _matches_json_path(record.value, value_filter)
    if isinstance(value_filter, ValueContainsFilter):
        return value_filter.value in _decode(record.value)
    if isinstance(value_filter, ValueRegexFilter):
        return _compiled(value_filter.pattern).fullmatch(_decode(record.value)) is not None
    raise TypeError(f"Unsupported value filter: {type(value_filter).__name__}")


def _matches_header(record: ReplayRecord, header_filter: HeaderFilter) -> bool:
    raw = record.headers.get(header_filter.key)
    if raw is None:
        return False
    if header_filter.value is None:
        return True
    actual = _decode(raw)
    if header_filter.exact_match:
        return actual == header_filter.value
    return header_filter.value in actual


def _matches_timestamp(record: ReplayRecord, window: TimestampRangeFilter) -> bool:
    if record.timestamp_ms is None:
        return False
    ts = datetime.fromtimestamp(record.timestamp_ms / 1000.0, tz=timezone.utc)
    if window.start is not None and ts < window.start:
        return False
    if window.end is not None and ts > window.end:
        return False
    return True


def matches(record: ReplayRecord, message_filter: Optional[MessageFilter]) -> bool:
    """
    Decide whether a record is selected by a filter.

    Header predicates form one group that holds only if every header
    predicate holds. The groups that are present (key, value, headers,
    timestamp) are then combined with the filter's AND/OR logic.

    Args:
        record: Source record
        message_filter: Filter, or None

    Returns:
        True if the record should be replayed. An absent or empty filter
        matches every record.
    """
    if message_filter is None or message_filter.is_empty:
        return True

    checks: List[Callable[[], bool]] = []
    if message_filter.key is not None:
        checks.append(lambda: _matches_key(record, message_filter.key))
    if message_filter.value is not None:
        checks.append(lambda: _matches_value(record, message_filter.value))
    if message_filter.headers:
        checks.append(
            lambda: all(_matches_header(record, h) for h in message_filter.headers)
        )
    if message_filter.timestamp_range is not None:
        checks.append(lambda: _matches_timestamp(record, message_filter.timestamp_range))

    if message_filter.logic == FilterLogic.OR:
        return any(check() for check in checks)
    return all(check() for check in checks)


__all__ = ["matches", "resolve_json_path"]
