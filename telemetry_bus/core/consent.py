"""
Consent sanitization.

Draws the line between anonymous aggregate analytics and identifying
analytics. Without the analytics category, identifying fields are stripped
and the user agent is replaced by a fixed token; session, store, activity
and URL fields are kept.

Sanitize is pure, deterministic and idempotent:
    sanitize(sanitize(p, c), c) == sanitize(p, c)
"""

from __future__ import annotations
from typing import Any, Dict, FrozenSet, Iterable, Mapping


STRIPPED_FIELDS = ("user_id", "ip_address")
REDACTED_FIELDS = ("user_agent",)


def normalize_categories(categories: Iterable[str] | None) -> FrozenSet[str]:
    """Trim and lowercase consent categories; a bare string counts as one category."""
    if not categories:
        return frozenset()
    if isinstance(categories, str):
        categories = [categories]
    return frozenset(c.strip().lower() for c in categories if c and c.strip())


class ConsentSanitizer:
    """
    Removes identifying fields from payloads of visitors without analytics consent.

    Usage:
        sanitizer = ConsentSanitizer()
        clean = sanitizer.sanitize(payload, {"necessary"})
    """

    def __init__(
        self,
        analytics_category: str = "analytics",
        redacted_user_agent: str = "redacted",
    ):
        self.analytics_category = analytics_category.strip().lower()
        self.redacted_user_agent = redacted_user_agent

    def allows_identification(self, categories: Iterable[str] | None) -> bool:
        return self.analytics_category in normalize_categories(categories)

    def sanitize(
        self,
        payload: Mapping[str, Any],
        categories: Iterable[str] | None,
    ) -> Dict[str, Any]:
        """
        Return a sanitized copy of the payload.

        Args:
            payload: Validated event payload (not modified)
            categories: Consent categories the visitor opted into

        Returns:
            New dict, identical to the input when analytics consent is given
        """
        sanitized = dict(payload)
        if self.allows_identification(categories):
            return sanitized

        for key in STRIPPED_FIELDS:
            sanitized.pop(key, None)

        for key in REDACTED_FIELDS:
            if sanitized.get(key):
                sanitized[key] = self.redacted_user_agent

        return sanitized
