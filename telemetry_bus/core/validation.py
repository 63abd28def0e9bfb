"""
Schema validation for incoming telemetry payloads.

One strict pydantic model per event type. Validation fails closed: every
violation is reported, nothing is coerced, and the payload handed in is never
modified (unknown fields are tolerated and left alone).

Usage:
    validator = SchemaValidator()
    result = validator.validate("heatmap_interaction", payload)
    if not result.ok:
        raise ValidationError(result.errors, "heatmap_interaction")
"""

from __future__ import annotations
import ipaddress
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Mapping, Optional, Type

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator

from telemetry_bus.core.errors import FieldError
from telemetry_bus.core.models import EventType


ACTIVITY_TYPES = (
    "page_view",
    "product_view",
    "add_to_cart",
    "remove_from_cart",
    "checkout_started",
    "order_completed",
    "search",
    "customer_login",
    "customer_registration",
)

INTERACTION_TYPES = (
    "click",
    "hover",
    "scroll",
    "mouse_move",
    "touch",
    "focus",
    "key_press",
)

SESSION_ID_PATTERN = r"^[A-Za-z0-9-]+$"
IDENTIFIER_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_-]*$"
MAX_URL_LENGTH = 2048
MAX_COORDINATE = 10000

_ABSOLUTE_URL = re.compile(r"^[A-Za-z][A-Za-z0-9+.-]*://[^/?#\s]+")
_WHITESPACE = re.compile(r"\s")


def _check_url(value: Optional[str]) -> Optional[str]:
    """Absolute (scheme://host...) or site-relative (/path) URLs only."""
    if value is None or value == "":
        return value
    if _WHITESPACE.search(value):
        raise ValueError("URL must not contain whitespace")
    if not (value.startswith("/") or _ABSOLUTE_URL.match(value)):
        raise ValueError("must be an absolute URL or a site-relative path")
    return value


def _check_ip(value: Optional[str]) -> Optional[str]:
    if value is None or value == "":
        return value
    try:
        ipaddress.ip_address(value)
    except ValueError:
        raise ValueError("must be a valid IPv4 or IPv6 address") from None
    return value


class _BasePayload(BaseModel):
    """Fields shared by every telemetry payload."""

    model_config = ConfigDict(strict=True, extra="allow")

    session_id: str = Field(max_length=255, pattern=SESSION_ID_PATTERN)
    store_id: str = Field(max_length=64, pattern=IDENTIFIER_PATTERN)
    user_id: Optional[str] = Field(default=None, max_length=255)
    user_agent: Optional[str] = Field(default=None, max_length=1000)
    ip_address: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    @field_validator("ip_address")
    @classmethod
    def validate_ip(cls, v: Optional[str]) -> Optional[str]:
        return _check_ip(v)


class CustomerActivityPayload(_BasePayload):
    activity_type: Literal[ACTIVITY_TYPES]  # type: ignore[valid-type]
    page_url: Optional[str] = Field(default=None, max_length=MAX_URL_LENGTH)
    referrer: Optional[str] = Field(default=None, max_length=MAX_URL_LENGTH)
    product_id: Optional[str] = Field(default=None, max_length=255)
    search_query: Optional[str] = Field(default=None, max_length=500)
    language: Optional[str] = Field(default=None, max_length=10)
    country: Optional[str] = Field(default=None, max_length=2)
    country_name: Optional[str] = Field(default=None, max_length=100)
    city: Optional[str] = Field(default=None, max_length=100)
    region: Optional[str] = Field(default=None, max_length=100)
    timezone: Optional[str] = Field(default=None, max_length=50)

    @field_validator("page_url", "referrer")
    @classmethod
    def validate_urls(cls, v: Optional[str]) -> Optional[str]:
        return _check_url(v)


class HeatmapInteractionPayload(_BasePayload):
    page_url: str = Field(min_length=1, max_length=MAX_URL_LENGTH)
    interaction_type: Literal[INTERACTION_TYPES]  # type: ignore[valid-type]
    x_coordinate: Optional[int] = Field(default=None, ge=0, le=MAX_COORDINATE)
    y_coordinate: Optional[int] = Field(default=None, ge=0, le=MAX_COORDINATE)
    viewport_width: Optional[int] = Field(default=None, ge=200, le=5000)
    viewport_height: Optional[int] = Field(default=None, ge=200, le=5000)
    scroll_position: Optional[float] = Field(default=None, ge=0, le=100000)
    scroll_depth_percent: Optional[float] = Field(default=None, ge=0, le=100)
    time_on_element: Optional[int] = Field(default=None, ge=0, le=86_400_000)
    element_selector: Optional[str] = Field(default=None, max_length=500)
    element_tag: Optional[str] = Field(default=None, max_length=50)
    element_id: Optional[str] = Field(default=None, max_length=255)
    element_class: Optional[str] = Field(default=None, max_length=500)
    element_text: Optional[str] = Field(default=None, max_length=500)
    device_type: Optional[str] = Field(default=None, max_length=50)

    @field_validator("page_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        return _check_url(v)


class ABAssignmentPayload(_BasePayload):
    test_id: str = Field(max_length=64, pattern=IDENTIFIER_PATTERN)
    variant_id: str = Field(min_length=1, max_length=255)


class ABConversionPayload(ABAssignmentPayload):
    goal: Optional[str] = Field(default=None, max_length=100)
    conversion_value: Optional[float] = Field(default=None, ge=0)


DEFAULT_SCHEMAS: Dict[EventType, Type[BaseModel]] = {
    EventType.CUSTOMER_ACTIVITY: CustomerActivityPayload,
    EventType.HEATMAP_INTERACTION: HeatmapInteractionPayload,
    EventType.AB_ASSIGNMENT: ABAssignmentPayload,
    EventType.AB_CONVERSION: ABConversionPayload,
}


@dataclass(frozen=True)
class ValidationResult:
    ok: bool
    errors: List[FieldError] = field(default_factory=list)


def _to_field_errors(exc: pydantic.ValidationError) -> List[FieldError]:
    errors = []
    for detail in exc.errors():
        loc = ".".join(str(part) for part in detail.get("loc", ())) or "payload"
        errors.append(FieldError(field=loc, message=detail.get("msg", "invalid value")))
    return errors


class SchemaValidator:
    """Per-type structural validation with no side effects."""

    def __init__(self, schemas: Optional[Mapping[EventType, Type[BaseModel]]] = None):
        self._schemas: Dict[EventType, Type[BaseModel]] = dict(schemas or DEFAULT_SCHEMAS)

    def supports(self, event_type: EventType | str) -> bool:
        try:
            return EventType.parse(event_type) in self._schemas
        except ValueError:
            return False

    def validate(self, event_type: EventType | str, payload: Any) -> ValidationResult:
        """
        Validate a raw payload against the schema of its type.

        Returns:
            ValidationResult with every violation found (empty when ok)
        """
        try:
            schema = self._schemas[EventType.parse(event_type)]
        except (ValueError, KeyError):
            return ValidationResult(
                ok=False,
                errors=[FieldError("type", f"unsupported event type '{event_type}'")],
            )

        if not isinstance(payload, Mapping):
            return ValidationResult(
                ok=False,
                errors=[FieldError("payload", "payload must be an object")],
            )

        try:
            schema.model_validate(dict(payload))
        except pydantic.ValidationError as e:
            return ValidationResult(ok=False, errors=_to_field_errors(e))

        return ValidationResult(ok=True)
