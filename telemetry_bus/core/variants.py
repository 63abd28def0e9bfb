"""Deterministic A/B variant assignment."""

from __future__ import annotations
import hashlib
from typing import Mapping, Sequence, Union


Variants = Union[Sequence[str], Mapping[str, float]]


def bucket(test_id: str, session_id: str) -> float:
    """Stable position in [0, 1) for a (test, session) pair."""
    digest = hashlib.sha256(f"{test_id}:{session_id}".encode()).digest()
    return int.from_bytes(digest[:8], "big") / 2 ** 64


def assign_variant(test_id: str, session_id: str, variants: Variants) -> str:
    """
    Pick the variant a session sees in a test.

    The same (test_id, session_id) always maps to the same variant for a
    given variant list, so assignment needs no stored state.

    Args:
        test_id: A/B test identifier
        session_id: Visitor session
        variants: Variant ids (equal split) or variant id -> weight,
            in a fixed order

    Returns:
        The assigned variant id

    Raises:
        ValueError: no variants, a negative weight, or all weights zero
    """
    if isinstance(variants, Mapping):
        weighted = [(str(v), float(w)) for v, w in variants.items()]
    else:
        weighted = [(str(v), 1.0) for v in variants]

    if any(w < 0 for _, w in weighted):
        raise ValueError("variant weights must be non-negative")
    total = sum(w for _, w in weighted)
    if not weighted or total <= 0:
        raise ValueError(f"test {test_id} has no variant with positive weight")

    threshold = bucket(test_id, session_id) * total
    cumulative = 0.0
    for variant_id, weight in weighted:
        cumulative += weight
        if threshold < cumulative:
            return variant_id

    # Float rounding at the top edge
    return [v for v, w in weighted if w > 0][-1]
