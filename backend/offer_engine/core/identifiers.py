"""
Public identifiers and entity references.

WHAT: Opaque public tokens plus a reference type that knows whether it is resolved
WHY: Callers address rows by public token, storage by internal key; the two must never be confused
HOW: PublicRef / InternalRef variants, classified once at the boundary and resolved by variant
"""

import secrets
from dataclasses import dataclass
from typing import Optional, Type, TypeVar, Union

from sqlalchemy.orm import Session

from .config import settings

PUBLIC_ID_ALPHABET = "23456789ABCDEFGHJKMNPQRSTUVWXYZabcdefghijkmnpqrstuvwxyz"

T = TypeVar("T")


def generate_public_id(length: Optional[int] = None) -> str:
    """
    Generate an unambiguous public identifier.

    Args:
        length: Token length (defaults to PUBLIC_ID_LENGTH)

    Returns:
        Random token drawn from PUBLIC_ID_ALPHABET
    """
    size = length or settings.PUBLIC_ID_LENGTH
    return "".join(secrets.choice(PUBLIC_ID_ALPHABET) for _ in range(size))


def is_valid_public_id(value: Optional[str]) -> bool:
    """Check token length and alphabet."""
    if not value or len(value) != settings.PUBLIC_ID_LENGTH:
        return False
    return all(ch in PUBLIC_ID_ALPHABET for ch in value)


@dataclass(frozen=True)
class PublicRef:
    """Unresolved reference: an external public token."""
    token: str

    def __str__(self) -> str:
        return self.token


@dataclass(frozen=True)
class InternalRef:
    """Resolved reference: an internal primary key."""
    key: str

    def __str__(self) -> str:
        return self.key


EntityRef = Union[PublicRef, InternalRef]


def parse_ref(raw: Union[str, PublicRef, InternalRef]) -> EntityRef:
    """
    Classify a raw identifier at the boundary.

    WHAT: Turn an incoming string into a tagged reference
    WHY: Downstream code must only match on the tag, never re-inspect the string
    HOW: Well-formed public tokens become PublicRef, anything else InternalRef
    """
    if isinstance(raw, (PublicRef, InternalRef)):
        return raw
    if is_valid_public_id(raw):
        return PublicRef(raw)
    return InternalRef(raw)


def resolve(db: Session, model: Type[T], ref: EntityRef) -> Optional[T]:
    """
    Load the row a reference points at.

    Args:
        db: Active session
        model: ORM class exposing `public_id` and a single-column primary key
        ref: Tagged reference

    Returns:
        The row, or None when nothing matches
    """
    if isinstance(ref, PublicRef):
        return db.query(model).filter(model.public_id == ref.token).first()
    if isinstance(ref, InternalRef):
        return db.get(model, ref.key)
    raise TypeError(f"Unsupported reference type: {type(ref).__name__}")
