"""
Per-record transformation schemas for reprocess-to-topic jobs.
"""

from typing import Annotated, Dict, List, Literal, Union

from pydantic import BaseModel, Field


class KeepKey(BaseModel):
    kind: Literal["keep"] = "keep"


class RemoveKey(BaseModel):
    """Produce the record with a null key."""

    kind: Literal["remove"] = "remove"


class ReplaceKey(BaseModel):
    kind: Literal["replace"] = "replace"
    value: str


KeyTransform = Annotated[
    Union[KeepKey, RemoveKey, ReplaceKey],
    Field(discriminator="kind"),
]


class KeepValue(BaseModel):
    kind: Literal["keep"] = "keep"


class ReplaceValue(BaseModel):
    kind: Literal["replace"] = "replace"
    value: str


class ConvertValueFormat(BaseModel):
    """Re-encode the value into another format.

    Formats without a registered converter pass the value through unchanged.
    """

    kind: Literal["convert"] = "convert"
    target_format: str = Field(..., min_length=1)


ValueTransform = Annotated[
    Union[KeepValue, ReplaceValue, ConvertValueFormat],
    Field(discriminator="kind"),
]


class MessageTransformation(BaseModel):
    """Rewrite applied to each matching record before it is produced.

    Header removals are applied before additions, so an addition wins when
    the same name appears in both.

    Attributes:
        key: Key rewrite (default: keep)
        value: Value rewrite (default: keep)
        header_removals: Header names to drop
        header_additions: Header names and values to set

    Example:
        >>> MessageTransformation(
        ...     key={"kind": "remove"},
        ...     header_additions={"replayed": "true"},
        ... )
    """

    key: KeyTransform = Field(default_factory=KeepKey)
    value: ValueTransform = Field(default_factory=KeepValue)
    header_removals: List[str] = Field(default_factory=list)
    header_additions: Dict[str, str] = Field(default_factory=dict)


__all__ = [
    "ConvertValueFormat",
    "KeepKey",
    "KeepValue",
    "KeyTransform",
    "MessageTransformation",
    "RemoveKey",
    "ReplaceKey",
    "ReplaceValue",
    "ValueTransform",
]
