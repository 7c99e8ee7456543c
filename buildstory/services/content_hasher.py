"""
Content addressing for storyboard sections.

A section's variant id is the SHA-256 of its canonical JSON form: keys sorted
at every depth, compact separators, no NaN/Infinity. Two sections with the
same field values map to the same bandit arm no matter how they were built
or which storyboard version introduced them.
"""

import hashlib
import json
from typing import Any, Dict, Iterable, List, Mapping, Tuple

from ..core.errors import ContentHashError
from .models import Storyboard


VARIANT_ID_LENGTH = 64


def canonical_json(value: Any) -> str:
    """Serialize with sorted keys and compact separators.

    Raises:
        ContentHashError: value holds something JSON cannot represent exactly.
    """
    try:
        return json.dumps(
            value,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
            allow_nan=False,
        )
    except (TypeError, ValueError) as e:
        raise ContentHashError(f"Section is not canonically serializable: {e}") from e


def compute_variant_id(section: Mapping[str, Any]) -> str:
    """Content-addressed identifier for a section.

    Args:
        section: Opaque section mapping.

    Returns:
        64-character lowercase hex SHA-256 digest.

    Raises:
        ContentHashError: section is not a mapping or cannot be serialized.
    """
    if not isinstance(section, Mapping):
        raise ContentHashError(
            f"Section must be a mapping, got {type(section).__name__}"
        )
    payload = canonical_json(dict(section))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def compute_document_hash(storyboard: Storyboard) -> str:
    """Hash of a whole storyboard version (stored alongside saved documents)."""
    payload = canonical_json(storyboard.model_dump(mode="json"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def dedupe_sections(sections: Iterable[Mapping[str, Any]]) -> List[Tuple[str, Dict[str, Any]]]:
    """Drop functionally identical sections, keeping the first occurrence.

    Returns:
        List of (variant_id, section) in first-seen order.
    """
    seen = set()
    unique: List[Tuple[str, Dict[str, Any]]] = []
    for section in sections:
        variant_id = compute_variant_id(section)
        if variant_id in seen:
            continue
        seen.add(variant_id)
        unique.append((variant_id, dict(section)))
    return unique
