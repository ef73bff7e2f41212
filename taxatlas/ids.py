"""Deterministic identifiers derived from natural keys."""

import uuid
from collections.abc import Iterable

# Rotating this namespace changes every derived id.
TAXATLAS_NAMESPACE = uuid.UUID("8b7b1f4f-3d36-4d8a-8a5f-0b3e3f0efc12")

KEY_SEPARATOR = "|"


def normalize_key_part(part) -> str:
    if part is None:
        return ""
    return str(part).strip()


def stable_uuid(parts: Iterable) -> uuid.UUID:
    """UUIDv5 of the normalized, separator-joined key parts.

    Example: stable_uuid(["minneapolis", "person", "jacob-frey"])
    """
    name = KEY_SEPARATOR.join(normalize_key_part(p) for p in parts)
    return uuid.uuid5(TAXATLAS_NAMESPACE, name)
