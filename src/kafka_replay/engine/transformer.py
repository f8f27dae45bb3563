"""
Transformation applier for reprocess-to-topic jobs.

Applying a transformation never fails a batch. Value conversions that
cannot be performed pass the original bytes through and log a warning
once per (format, reason).
"""

import json
import logging
from dataclasses import replace
from typing import Callable, Dict, Optional, Set, Tuple

from kafka_replay.common.logging import get_logger, log_with_context
from kafka_replay.schemas.records import ReplayRecord
from kafka_replay.schemas.transformations import (
    ConvertValueFormat,
    KeepKey,
    KeepValue,
    MessageTransformation,
    RemoveKey,
    ReplaceKey,
    ReplaceValue,
)

logger = get_logger(__name__)

ValueConverter = Callable[[bytes], bytes]


class ConversionUnavailable(Exception):
    """Raised by a converter that cannot handle the given value."""


def _to_json(value: bytes) -> bytes:
    try:
        document = json.loads(value)
    except ValueError as e:
        raise ConversionUnavailable("value is not valid JSON") from e
    except RecursionError as e:
        raise ConversionUnavailable("value is nested too deeply") from e
    try:
        encoded = json.dumps(document, separators=(",", ":"), ensure_ascii=False)
    except RecursionError as e:
        raise ConversionUnavailable("value is nested too deeply") from e
    return encoded.encode("utf-8")


def _to_text(value: bytes) -> bytes:
    return value.decode("utf-8", errors="replace").encode("utf-8")


_CONVERTERS: Dict[str, ValueConverter] = {
    "json": _to_json,
    "text": _to_text,
}

_warned: Set[Tuple[str, str]] = set()


def register_converter(target_format: str, converter: ValueConverter) -> None:
    """Register a value converter for ``ConvertValueFormat`` (case-insensitive)."""
    _CONVERTERS[target_format.lower()] = converter


def _warn_once(target_format: str, reason: str) -> None:
    marker = (target_format, reason)
    if marker in _warned:
        return
    _warned.add(marker)
    log_with_context(
        logger,
        logging.WARNING,
        "Value format conversion unavailable, passing value through unchanged",
        target_format=target_format,
        error_message=reason,
    )


def _convert_value(value: Optional[bytes], target_format: str) -> Optional[bytes]:
    if value is None:
        return None
    converter = _CONVERTERS.get(target_format.lower())
    if converter is None:
        _warn_once(target_format, "no converter registered")
        return value
    try:
        return converter(value)
    except ConversionUnavailable as e:
        _warn_once(target_format, str(e))
        return value


def apply(record: ReplayRecord, transformation: Optional[MessageTransformation]) -> ReplayRecord:
    """
    Apply a transformation to a record.

    Args:
        record: Record selected by the filter
        transformation: Rewrite to apply, or None

    Returns:
        A new record (or the same one when there is nothing to apply).
        Topic, partition, offset and timestamp are never changed.
    """
    if transformation is None:
        return record

    key_rule = transformation.key
    if isinstance(key_rule, KeepKey):
        key = record.key
    elif isinstance(key_rule, RemoveKey):
        key = None
    elif isinstance(key_rule, ReplaceKey):
        key = key_rule.value.encode("utf-8")
    else:
        raise TypeError(f"Unsupported key transform: {type(key_rule).__name__}")

    value_rule = transformation.value
    if isinstance(value_rule, KeepValue):
        value = record.value
    elif isinstance(value_rule, ReplaceValue):
        value = value_rule.value.encode("utf-8")
    elif isinstance(value_rule, ConvertValueFormat):
        value = _convert_value(record.value, value_rule.target_format)
    else:
        raise TypeError(f"Unsupported value transform: {type(value_rule).__name__}")

    headers = {
        name: data
        for name, data in record.headers.items()
        if name not in transformation.header_removals
    }
    for name, text in transformation.header_additions.items():
        headers[name] = text.encode("utf-8")

    return replace(record, key=key, value=value, headers=headers)


__all__ = ["ConversionUnavailable", "apply", "register_converter"]
