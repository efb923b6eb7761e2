"""Deterministic idempotency keys for story content."""

import hashlib
import re

from storymint.common.errors import MintValidationError


_HEX64 = re.compile(r"^[0-9a-f]{64}$")


def normalize_address(address: str) -> str:
    """Canonical wallet address form used in every ledger key."""

    return address.strip().lower()


def story_content_hash(title: str, body: str, author_address: str) -> str:
    """SHA-256 over normalized `title|body|author`.

    Title and body are trimmed and lowercased independently, so the same story
    typed with different case or surrounding whitespace maps to the same key.
    Any other difference produces a different key.
    """

    data = "|".join(
        [title.strip().lower(), body.strip().lower(), normalize_address(author_address)]
    )
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def is_valid_content_hash(value) -> bool:
    return isinstance(value, str) and _HEX64.fullmatch(value) is not None


def require_content_hash(value) -> str:
    """Return `value` unchanged if it is 64 lowercase hex chars, else raise."""

    if not is_valid_content_hash(value):
        raise MintValidationError("Invalid storyHash format")
    return value
