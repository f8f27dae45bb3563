"""
Message filter schemas for replay jobs.

Each predicate family is a closed set of variants tagged by ``kind``, so an
unknown predicate is rejected when the job is submitted rather than when a
record is evaluated.
"""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator

_PATH_TOKEN = re.compile(
    r"""\.(?P<name>[A-Za-z_][\w\-]*)"""
    r"""|\[(?P<index>\d+)\]"""
    r"""|\['(?P<squoted>[^']*)'\]"""
    r"""|\["(?P<dquoted>[^"]*)"\]"""
)


def parse_json_path(path: str) -> List[Union[str, int]]:
    """
    Parse a simple JSONPath expression into lookup steps.

    Supports ``$``-rooted dotted names, bracketed quoted names and array
    indexes, e.g. ``$.order.items[0]['sku']``.

    Args:
        path: JSONPath expression

    Returns:
        List of dict keys (str) and list indexes (int)

    Raises:
        ValueError: If the expression is not a supported path
    """
    if not path.startswith("$"):
        raise ValueError(f"JSON path must start with '$': {path!r}")

    steps: List[Union[str, int]] = []
    pos = 1
    while pos < len(path):
        match = _PATH_TOKEN.match(path, pos)
        if match is None:
            raise ValueError(f"Unsupported JSON path syntax at position {pos}: {path!r}")
        if match.group("index") is not None:
            steps.append(int(match.group("index")))
        else:
            steps.append(
                match.group("name")
                or match.group("squoted")
                or match.group("dquoted")
                or ""
            )
        pos = match.end()
    return steps


def _compile_pattern(pattern: str) -> str:
    try:
        re.compile(pattern)
    except re.error as e:
        raise ValueError(f"Invalid regex pattern {pattern!r}: {e}") from e
    return pattern


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# =============================================================================
# Key predicates
# =============================================================================


class KeyExactFilter(BaseModel):
    """Key equals the given string."""

    kind: Literal["exact"] = "exact"
    value: str


class KeyPrefixFilter(BaseModel):
    """Key starts with the given prefix."""

    kind: Literal["prefix"] = "prefix"
    prefix: str


class KeyRegexFilter(BaseModel):
    """Whole key matches the pattern."""

    kind: Literal["regex"] = "regex"
    pattern: str

    @field_validator("pattern")
    @classmethod
    def validate_pattern(cls, v: str) -> str:
        return _compile_pattern(v)


class KeyContainsFilter(BaseModel):
    """Key contains the given substring."""

    kind: Literal["contains"] = "contains"
    value: str


KeyFilter = Annotated[
    Union[KeyExactFilter, KeyPrefixFilter, KeyRegexFilter, KeyContainsFilter],
    Field(discriminator="kind"),
]


# =============================================================================
# Value predicates
# =============================================================================


class ValueContainsFilter(BaseModel):
    """Value (decoded as UTF-8) contains the given substring."""

    kind: Literal["contains"] = "contains"
    value: str


class ValueRegexFilter(BaseModel):
    """Whole value (decoded as UTF-8) matches the pattern."""

    kind: Literal["regex"] = "regex"
    pattern: str

    @field_validator("pattern")
    @classmethod
    def validate_pattern(cls, v: str) -> str:
        return _compile_pattern(v)


class ValueSizeFilter(BaseModel):
    """Value size in bytes lies within [min_bytes, max_bytes]."""

    kind: Literal["size"] = "size"
    min_bytes: Optional[int] = Field(default=None, ge=0)
    max_bytes: Optional[int] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def validate_bounds(self) -> "ValueSizeFilter":
        """Require at least one bound, and min <= max when both are set."""
        if self.min_bytes is None and self.max_bytes is None:
            raise ValueError("size filter needs min_bytes or max_bytes")
        if (
            self.min_bytes is not None
            and self.max_bytes is not None
            and self.min_bytes > self.max_bytes
        ):
            raise ValueError("min_bytes cannot exceed max_bytes")
        return self


class ValueJsonPathFilter(BaseModel):
    """Value parses as JSON and the path resolves to a non-null element.

    When ``equals`` is set the resolved element must also equal it.
    """

    kind: Literal["json_path"] = "json_path"
    path: str
    equals: Optional[Any] = None

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        parse_json_path(v)
        return v


ValueFilter = Annotated[
    Union[ValueContainsFilter, ValueRegexFilter, ValueSizeFilter, ValueJsonPathFilter],
    Field(discriminator="kind"),
]


# =============================================================================
# Header and timestamp predicates
# =============================================================================


class HeaderFilter(BaseModel):
    """Header predicate.

    A missing ``value`` only checks that the header exists. Otherwise the
    decoded header value must equal ``value`` (exact_match) or contain it.
    """

    key: str = Field(..., min_length=1)
    value: Optional[str] = None
    exact_match: bool = True


class TimestampRangeFilter(BaseModel):
    """Record timestamp lies within [start, end], both inclusive."""

    start: Optional[datetime] = None
    end: Optional[datetime] = None

    @field_validator("start", "end")
    @classmethod
    def normalize_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Interpret naive datetimes as UTC."""
        return _as_utc(v)

    @model_validator(mode="after")
    def validate_order(self) -> "TimestampRangeFilter":
        if self.start is not None and self.end is not None and self.start > self.end:
            raise ValueError("timestamp range start must not be after end")
        return self


class FilterLogic(str, Enum):
    """How present predicates combine."""

    AND = "AND"
    OR = "OR"


class MessageFilter(BaseModel):
    """Record selection predicate for a replay job.

    Attributes:
        key: Optional key predicate
        value: Optional value predicate
        headers: Header predicates, all of which must hold
        timestamp_range: Optional inclusive timestamp window
        logic: AND (default) or OR across the predicates that are present

    Example:
        >>> MessageFilter(key={"kind": "exact", "value": "user-42"})
    """

    key: Optional[KeyFilter] = None
    value: Optional[ValueFilter] = None
    headers: List[HeaderFilter] = Field(default_factory=list)
    timestamp_range: Optional[TimestampRangeFilter] = None
    logic: FilterLogic = FilterLogic.AND

    @property
    def is_empty(self) -> bool:
        """True when no predicate is configured (matches every record)."""
        return (
            self.key is None
            and self.value is None
            and not self.headers
            and self.timestamp_range is None
        )


__all__ = [
    "FilterLogic",
    "HeaderFilter",
    "KeyContainsFilter",
    "KeyExactFilter",
    "KeyFilter",
    "KeyPrefixFilter",
    "KeyRegexFilter",
    "MessageFilter",
    "TimestampRangeFilter",
    "ValueContainsFilter",
    "ValueFilter",
    "ValueJsonPathFilter",
    "ValueRegexFilter",
    "ValueSizeFilter",
    "parse_json_path",
]
