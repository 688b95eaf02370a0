"""Immutable data contracts for topics and their references."""
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Mapping, Type, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from typing_extensions import Literal

from backend.app.errors import ValidationError

QURAN_CHAPTER_COUNT = 114
DEFAULT_PAGE = 1
DEFAULT_PAGE_SIZE = 50


class _FrozenBaseModel(BaseModel):
    """Base model enforcing immutability after creation."""

    model_config = ConfigDict(frozen=True)


class ReferenceKind(str, Enum):
    """Discriminant persisted alongside every reference node."""

    VERSE = "verse"
    HADITH = "hadith"
    BOOK = "book"


class Topic(_FrozenBaseModel):
    """Named subject node that references are attached to."""

    name: str = Field(..., min_length=1, max_length=200)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        """Normalise surrounding whitespace and reject blank names.

        Args:
            value: The proposed topic name.

        Returns:
            str: The stripped topic name.

        Raises:
            ValueError: If the name is empty once stripped.
        """
        stripped = value.strip()
        if not stripped:
            raise ValueError("topic name must not be blank")
        return stripped


class VerseRange(_FrozenBaseModel):
    """Quran verse range within a single chapter."""

    kind: Literal["verse"] = "verse"
    chapter: int
    init_verse: int = Field(..., ge=0)
    final_verse: int = Field(..., ge=0)


class Citation(_FrozenBaseModel):
    """Hadith citation identified by collection and number."""

    kind: Literal["hadith"] = "hadith"
    collection: str = Field(..., min_length=1)
    number: str = Field(..., min_length=1)


class BookReference(_FrozenBaseModel):
    """Bibliographic citation; kept out of public topic browsing."""

    kind: Literal["book"] = "book"
    isbn: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    page: int = Field(..., ge=0)


Reference = Union[VerseRange, Citation, BookReference]

_VARIANTS: Dict[ReferenceKind, Type[BaseModel]] = {
    ReferenceKind.VERSE: VerseRange,
    ReferenceKind.HADITH: Citation,
    ReferenceKind.BOOK: BookReference,
}

# Field sets used to classify untagged payloads. They are pairwise disjoint.
_STRUCTURAL_FIELDS: Dict[ReferenceKind, frozenset] = {
    ReferenceKind.VERSE: frozenset({"chapter", "init_verse", "final_verse"}),
    ReferenceKind.HADITH: frozenset({"collection", "number"}),
    ReferenceKind.BOOK: frozenset({"isbn", "name", "page"}),
}


class Pagination(_FrozenBaseModel):
    """One-based page request."""

    page: int = DEFAULT_PAGE
    size: int = DEFAULT_PAGE_SIZE

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.size


def validate_pagination(page: int, size: int) -> Pagination:
    """Return a pagination request, rejecting non-positive values."""

    if page <= 0 or size <= 0:
        raise ValidationError("Invalid query parameters. Must be positive integers.")
    return Pagination(page=page, size=size)


def validate_verse_range(reference: VerseRange) -> VerseRange:
    """Apply domain rules to a verse range before persistence.

    Args:
        reference: The verse range supplied by the caller.

    Returns:
        VerseRange: The unchanged reference when valid.

    Raises:
        ValidationError: If the chapter is outside 1..114 or the range is inverted.
    """

    if reference.chapter < 1 or reference.chapter > QURAN_CHAPTER_COUNT:
        raise ValidationError(
            f"chapter must be between 1 and {QURAN_CHAPTER_COUNT}, got {reference.chapter}"
        )
    if reference.final_verse < reference.init_verse:
        raise ValidationError("final_verse must be greater than or equal to init_verse")
    return reference


def validate_reference(reference: Reference) -> Reference:
    """Validate any reference variant; only verse ranges carry extra rules."""

    if isinstance(reference, VerseRange):
        return validate_verse_range(reference)
    return reference


def is_book(reference: Reference) -> bool:
    """Return whether the reference is a bibliographic book citation."""

    return isinstance(reference, BookReference)


def reference_kind(reference: Reference) -> ReferenceKind:
    return ReferenceKind(reference.kind)


def encode_reference(reference: Reference) -> Dict[str, Any]:
    """Flatten a reference into primitive properties, tag included."""

    payload = reference.model_dump(mode="json")
    payload["kind"] = reference_kind(reference).value
    return payload


def _classify(payload: Mapping[str, Any]) -> ReferenceKind:
    raw_kind = payload.get("kind")
    if raw_kind is not None:
        try:
            return ReferenceKind(raw_kind)
        except ValueError as exc:
            raise ValidationError(f"Unknown reference kind: {raw_kind!r}") from exc
    present = {key for key, value in payload.items() if value is not None}
    matches = [kind for kind, fields in _STRUCTURAL_FIELDS.items() if fields <= present]
    if len(matches) != 1:
        raise ValidationError(
            "Reference payload does not match exactly one reference shape"
        )
    return matches[0]


def decode_reference(payload: Mapping[str, Any]) -> Reference:
    """Decode stored or submitted properties into a reference variant.

    Tagged payloads are decoded by their ``kind``; untagged ones are
    classified by which field set they carry.

    Args:
        payload: Node properties or JSON body.

    Returns:
        Reference: The decoded variant.

    Raises:
        ValidationError: If the payload matches no variant or is malformed.
    """

    kind = _classify(payload)
    model = _VARIANTS[kind]
    fields = {key: payload[key] for key in _STRUCTURAL_FIELDS[kind] if key in payload}
    try:
        return model(**fields)  # type: ignore[return-value]
    except PydanticValidationError as exc:
        raise ValidationError(f"Malformed {kind.value} reference: {exc}") from exc


__all__ = [
    "BookReference",
    "Citation",
    "DEFAULT_PAGE",
    "DEFAULT_PAGE_SIZE",
    "Pagination",
    "QURAN_CHAPTER_COUNT",
    "Reference",
    "ReferenceKind",
    "Topic",
    "VerseRange",
    "decode_reference",
    "encode_reference",
    "is_book",
    "reference_kind",
    "validate_pagination",
    "validate_reference",
    "validate_verse_range",
]
